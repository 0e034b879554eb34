"""Configuration loader for netdispatch."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from . import constants


class ConfigurationError(RuntimeError):
    """Raised when the configuration cannot be turned into a usable setup."""


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    client_id: Optional[str] = None
    keepalive: int = 60
    session_expiry_seconds: int = 3600


@dataclass(slots=True)
class TopicsConfig:
    commands: str = constants.DEFAULT_COMMANDS_TOPIC
    results: str = constants.DEFAULT_RESULTS_TOPIC
    notifications: str = constants.DEFAULT_NOTIFICATIONS_TOPIC


@dataclass(slots=True)
class GroupsConfig:
    executor: str = constants.DEFAULT_EXECUTOR_GROUP
    monitor: str = constants.DEFAULT_MONITOR_GROUP


@dataclass(slots=True)
class CommandConfig:
    timeout_seconds: float = 30.0
    max_retries: int = 3
    retry_delay_seconds: float = 5.0


@dataclass(slots=True)
class ExecutorConfig:
    max_concurrency: int = 8
    action_timeout_seconds: float = 10.0


@dataclass(slots=True)
class DirectoryConfig:
    base_url: str = constants.DEFAULT_DIRECTORY_BASE_URL
    api_key: Optional[str] = None


@dataclass(slots=True)
class RouterOSConfig:
    scheme: str = "http"
    request_timeout_seconds: float = 5.0
    stats_interface: str = "ether1"
    verify_tls: bool = True


@dataclass(slots=True)
class MonitorConfig:
    ledger_path: Optional[Path] = None
    outcome_ttl_seconds: float = 3600.0
    ledger_compact_after: int = 1000


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class DispatchConfig:
    broker: BrokerConfig
    topics: TopicsConfig
    groups: GroupsConfig
    commands: CommandConfig
    executor: ExecutorConfig
    directory: DirectoryConfig
    routeros: RouterOSConfig
    monitor: MonitorConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _apply_env_overrides(parser: ConfigParser, environ: Mapping[str, str]) -> None:
    """Apply ``NETDISPATCH_<SECTION>_<KEY>`` variables on top of the file."""

    prefix = constants.ENV_PREFIX
    for name, value in environ.items():
        if not name.startswith(prefix):
            continue
        remainder = name[len(prefix):].lower()
        for section in parser.sections():
            marker = f"{section}_"
            if remainder.startswith(marker) and len(remainder) > len(marker):
                parser.set(section, remainder[len(marker):], value)
                break


def _optional(parser: ConfigParser, section: str, option: str) -> Optional[str]:
    value = parser.get(section, option, fallback="").strip()
    return value or None


def load_config(
    path: Optional[Path] = None, *, environ: Optional[Mapping[str, str]] = None
) -> DispatchConfig:
    """Load configuration from disk, applying defaults and environment overrides."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "username": "",
                "password": "",
                "client_id": "",
                "keepalive": "60",
                "session_expiry_seconds": "3600",
            },
            "topics": {
                "commands": constants.DEFAULT_COMMANDS_TOPIC,
                "results": constants.DEFAULT_RESULTS_TOPIC,
                "notifications": constants.DEFAULT_NOTIFICATIONS_TOPIC,
            },
            "groups": {
                "executor": constants.DEFAULT_EXECUTOR_GROUP,
                "monitor": constants.DEFAULT_MONITOR_GROUP,
            },
            "commands": {
                "timeout_seconds": "30.0",
                "max_retries": "3",
                "retry_delay_seconds": "5.0",
            },
            "executor": {
                "max_concurrency": "8",
                "action_timeout_seconds": "10.0",
            },
            "directory": {
                "base_url": constants.DEFAULT_DIRECTORY_BASE_URL,
                "api_key": "",
            },
            "routeros": {
                "scheme": "http",
                "request_timeout_seconds": "5.0",
                "stats_interface": "ether1",
                "verify_tls": "true",
            },
            "monitor": {
                "ledger_path": "",
                "outcome_ttl_seconds": "3600",
                "ledger_compact_after": "1000",
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    _apply_env_overrides(parser, os.environ if environ is None else environ)

    broker_host_value = parser.get("broker", "host")
    broker_port_value = parser.getint(
        "broker", "port", fallback=constants.DEFAULT_BROKER_PORT
    )

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        host=broker_host_value,
        port=broker_port_value,
        username=_optional(parser, "broker", "username"),
        password=_optional(parser, "broker", "password"),
        client_id=_optional(parser, "broker", "client_id"),
        keepalive=max(1, parser.getint("broker", "keepalive", fallback=60)),
        session_expiry_seconds=max(
            0, parser.getint("broker", "session_expiry_seconds", fallback=3600)
        ),
    )

    topics = TopicsConfig(
        commands=parser.get("topics", "commands"),
        results=parser.get("topics", "results"),
        notifications=parser.get("topics", "notifications"),
    )

    groups = GroupsConfig(
        executor=parser.get("groups", "executor"),
        monitor=parser.get("groups", "monitor"),
    )
    if groups.executor == groups.monitor:
        raise ConfigurationError(
            "Executor and monitor consumer groups must be distinct"
        )

    commands = CommandConfig(
        timeout_seconds=max(
            0.0, parser.getfloat("commands", "timeout_seconds", fallback=30.0)
        ),
        max_retries=max(0, parser.getint("commands", "max_retries", fallback=3)),
        retry_delay_seconds=max(
            0.0, parser.getfloat("commands", "retry_delay_seconds", fallback=5.0)
        ),
    )

    executor = ExecutorConfig(
        max_concurrency=max(
            1, parser.getint("executor", "max_concurrency", fallback=8)
        ),
        action_timeout_seconds=max(
            0.1,
            parser.getfloat("executor", "action_timeout_seconds", fallback=10.0),
        ),
    )

    directory = DirectoryConfig(
        base_url=parser.get("directory", "base_url"),
        api_key=_optional(parser, "directory", "api_key"),
    )

    scheme = parser.get("routeros", "scheme", fallback="http").strip().lower()
    if scheme not in ("http", "https"):
        raise ConfigurationError(f"Unsupported RouterOS scheme: {scheme!r}")
    routeros = RouterOSConfig(
        scheme=scheme,
        request_timeout_seconds=max(
            0.1,
            parser.getfloat("routeros", "request_timeout_seconds", fallback=5.0),
        ),
        stats_interface=parser.get("routeros", "stats_interface", fallback="ether1"),
        verify_tls=parser.getboolean("routeros", "verify_tls", fallback=True),
    )

    ledger_value = _optional(parser, "monitor", "ledger_path")
    monitor = MonitorConfig(
        ledger_path=Path(ledger_value).expanduser() if ledger_value else None,
        outcome_ttl_seconds=max(
            0.0, parser.getfloat("monitor", "outcome_ttl_seconds", fallback=3600.0)
        ),
        ledger_compact_after=max(
            1, parser.getint("monitor", "ledger_compact_after", fallback=1000)
        ),
    )

    log_path_value = _optional(parser, "logging", "path")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return DispatchConfig(
        broker=broker,
        topics=topics,
        groups=groups,
        commands=commands,
        executor=executor,
        directory=directory,
        routeros=routeros,
        monitor=monitor,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )
