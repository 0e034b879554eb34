"""Constants used across the netdispatch package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "netdispatch"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path("/etc") / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883

DEFAULT_COMMANDS_TOPIC = f"{APP_NAME}/commands"
DEFAULT_RESULTS_TOPIC = f"{APP_NAME}/results"
DEFAULT_NOTIFICATIONS_TOPIC = f"{APP_NAME}/notifications"

DEFAULT_EXECUTOR_GROUP = "executor"
DEFAULT_MONITOR_GROUP = "monitor"

DEFAULT_DIRECTORY_BASE_URL = "http://localhost:3000"

ENV_PREFIX = "NETDISPATCH_"
