"""Main application entry-point for netdispatch."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from enum import Enum
from typing import Any, Optional

from . import constants
from .adapters import BillingDirectoryClient, MQTTClient, MQTTConnectionError, RouterOSClient
from .config import DispatchConfig, load_config
from .core.models import Command, CommandCompleted
from .core.outcomes import RecentOutcomes
from .core.protocols import DeviceController, DeviceDirectory
from .core.wire import MessageDecodeError, decode_completed
from .executor import DeviceActionExecutor
from .health import HealthReporter, HealthServer
from .ledger import CommandLedger
from .logging import configure_logging
from .monitor import CommandMonitor
from .producer import CommandProducer

LOGGER = logging.getLogger(__name__)


class ServiceRole(str, Enum):
    EXECUTOR = "executor"
    MONITOR = "monitor"
    ALL = "all"

    @property
    def runs_executor(self) -> bool:
        return self in (ServiceRole.EXECUTOR, ServiceRole.ALL)

    @property
    def runs_monitor(self) -> bool:
        return self in (ServiceRole.MONITOR, ServiceRole.ALL)


class DispatchApp:
    """Coordinates application startup and shutdown.

    Depending on its role the app runs the device action executor, the
    command monitor, or both, over one broker connection. Collaborators can
    be injected for testing; otherwise they are built from the configuration.
    """

    def __init__(
        self,
        config: Optional[DispatchConfig] = None,
        *,
        role: ServiceRole | str = ServiceRole.ALL,
        broker: Optional[MQTTClient] = None,
        directory: Optional[DeviceDirectory] = None,
        controller: Optional[DeviceController] = None,
    ) -> None:
        self._config = config or load_config()
        self._role = ServiceRole(role)
        self._broker = broker
        self._directory = directory
        self._controller = controller
        self._owns_adapters = directory is None and controller is None

        self._producer: Optional[CommandProducer] = None
        self._executor: Optional[DeviceActionExecutor] = None
        self._monitor: Optional[CommandMonitor] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._stopping = False

    @property
    def role(self) -> ServiceRole:
        return self._role

    @property
    def producer(self) -> Optional[CommandProducer]:
        return self._producer

    @property
    def monitor(self) -> Optional[CommandMonitor]:
        return self._monitor

    @property
    def executor(self) -> Optional[DeviceActionExecutor]:
        return self._executor

    @property
    def health(self) -> HealthReporter:
        return self._health

    def submit(self, command: Command, *, timeout: Optional[float] = None) -> str:
        """Dispatch ``command`` and, when the monitor runs here, track it."""
        if self._monitor is not None:
            return self._monitor.submit(command, timeout=timeout)
        if self._producer is None:
            raise RuntimeError("DispatchApp is not running")
        return self._producer.dispatch(command)

    async def run(self) -> None:
        self._shutdown_event = asyncio.Event()

        LOGGER.info(
            "netdispatch starting as %s with config: %s",
            self._role.value,
            self._config.path,
        )
        try:
            await self.start_services()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("netdispatch received shutdown signal")
            raise
        finally:
            await self.stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(
        cls, config: Optional[DispatchConfig] = None, *, role: ServiceRole | str = ServiceRole.ALL
    ) -> None:
        instance = cls(config=config, role=role)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("netdispatch received shutdown signal")

    async def start_services(self) -> None:
        config = self._config
        self._stopping = False

        await self._health.update("broker", False, "initialising")
        await self._start_health_server()

        if self._broker is None:
            self._broker = MQTTClient(
                config.broker, client_id=_build_client_id(config, self._role)
            )
        self._broker.register_disconnect_handler(self._on_broker_disconnect)
        self._broker.register_connect_handler(self._on_broker_connect)

        try:
            await self._broker.connect()
        except MQTTConnectionError as exc:
            await self._health.update("broker", False, str(exc))
            LOGGER.error("MQTT connection failed: %s", exc)
            raise
        await self._health.update("broker", True, None)

        self._producer = CommandProducer(self._broker, config.topics.commands)

        if self._role.runs_monitor:
            await self._start_monitor()
        if self._role.runs_executor:
            await self._start_executor()

    async def _start_monitor(self) -> None:
        config = self._config
        assert self._broker is not None and self._producer is not None

        ledger = (
            CommandLedger(
                config.monitor.ledger_path,
                compact_after=config.monitor.ledger_compact_after,
            )
            if config.monitor.ledger_path is not None
            else None
        )
        self._monitor = CommandMonitor(
            self._broker,
            self._producer,
            results_topic=config.topics.results,
            notifications_topic=config.topics.notifications,
            commands_topic=config.topics.commands,
            group=config.groups.monitor,
            default_timeout=config.commands.timeout_seconds,
            max_retries=config.commands.max_retries,
            retry_delay=config.commands.retry_delay_seconds,
            ledger=ledger,
            outcomes=RecentOutcomes(ttl_seconds=config.monitor.outcome_ttl_seconds),
        )
        await self._monitor.start()
        self._health.register_stats("commands", self._monitor.get_command_stats)
        await self._health.update("monitor", True, None)

    async def _start_executor(self) -> None:
        config = self._config
        assert self._broker is not None

        if self._directory is None:
            self._directory = BillingDirectoryClient(config.directory)
        if self._controller is None:
            self._controller = RouterOSClient(config.routeros)

        self._executor = DeviceActionExecutor(
            self._broker,
            self._directory,
            self._controller,
            commands_topic=config.topics.commands,
            results_topic=config.topics.results,
            group=config.groups.executor,
            max_concurrency=config.executor.max_concurrency,
            action_timeout=config.executor.action_timeout_seconds,
        )
        await self._executor.start()
        self._health.register_stats(
            "executor", lambda: {"inflight": self._executor.pending_count if self._executor else 0}
        )
        await self._health.update("executor", True, None)

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except Exception as exc:  # pragma: no cover - depends on host networking
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    async def stop_services(self) -> None:
        if self._stopping:
            return
        self._stopping = True

        if self._executor is not None:
            await self._executor.stop()
            self._executor = None
            self._health.unregister_stats("executor")

        if self._monitor is not None:
            await self._monitor.stop()
            self._monitor = None
            self._health.unregister_stats("commands")

        self._producer = None

        if self._broker is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                await self._broker.disconnect()
            await self._health.update("broker", False, "shutdown")

        if self._owns_adapters:
            await _close_quietly(self._directory)
            await _close_quietly(self._controller)

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _on_broker_disconnect(self, rc: int) -> None:
        if self._stopping:
            return
        LOGGER.warning("Broker connection lost (rc=%s); paho will reconnect", rc)
        asyncio.ensure_future(self._health.update("broker", False, f"disconnected (rc={rc})"))

    def _on_broker_connect(self, rc: int) -> None:
        if self._stopping:
            return
        asyncio.ensure_future(self._health.update("broker", True, None))


class OutcomeTimeout(RuntimeError):
    """Raised when no monitor reports a terminal outcome in time."""

    def __init__(self, message: str, *, command_id: str) -> None:
        super().__init__(message)
        self.command_id = command_id


def outcome_wait_seconds(config: DispatchConfig) -> float:
    """Upper bound on how long a monitor can take to close one command."""
    commands = config.commands
    attempts = commands.max_retries + 1
    return (
        attempts * (commands.timeout_seconds + commands.retry_delay_seconds)
        + commands.timeout_seconds
    )


async def dispatch_command(
    config: DispatchConfig,
    command: Command,
    *,
    track: bool = False,
    broker: Optional[MQTTClient] = None,
    wait_timeout: Optional[float] = None,
) -> tuple[str, Optional[CommandCompleted]]:
    """Publish one command and optionally wait for its terminal outcome.

    Supervision belongs to the monitor service, which adopts every command
    seen on the commands topic. Tracking only follows the notifications
    topic for the outcome whose origin is this command, across retries.
    """

    client = broker or MQTTClient(
        config.broker, client_id=f"{constants.APP_NAME}-cli-{os.getpid()}"
    )
    await client.connect()
    try:
        producer = CommandProducer(client, config.topics.commands)
        if not track:
            return producer.dispatch(command), None

        prepared = producer.prepare(command)
        command_id = prepared.command_id
        assert command_id is not None

        loop = asyncio.get_running_loop()
        completed: asyncio.Future[CommandCompleted] = loop.create_future()

        async def _on_notification(topic: str, payload: bytes) -> None:
            try:
                notification = decode_completed(payload)
            except MessageDecodeError as exc:
                LOGGER.debug("Ignoring undecodable notification: %s", exc)
                return
            origin = notification.origin_command_id or notification.command_id
            if origin == command_id and not completed.done():
                completed.set_result(notification)

        notifications = config.topics.notifications
        client.subscribe(notifications, _on_notification, qos=1)
        try:
            producer.publish(prepared)
            limit = outcome_wait_seconds(config) if wait_timeout is None else wait_timeout
            try:
                async with asyncio.timeout(limit):
                    return command_id, await completed
            except TimeoutError as exc:
                raise OutcomeTimeout(
                    f"No outcome reported for {command_id} within {limit:.0f}s",
                    command_id=command_id,
                ) from exc
        finally:
            try:
                client.unsubscribe(notifications)
            except MQTTConnectionError as exc:
                LOGGER.debug("Failed to unsubscribe from %s: %s", notifications, exc)
    finally:
        with contextlib.suppress(asyncio.TimeoutError):
            await client.disconnect()


async def _close_quietly(adapter: Any) -> None:
    close = getattr(adapter, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:  # pragma: no cover - best-effort cleanup
        LOGGER.debug("Error closing %s: %s", type(adapter).__name__, exc)


def _build_client_id(config: DispatchConfig, role: ServiceRole) -> str:
    if config.broker.client_id:
        return config.broker.client_id
    return f"{constants.APP_NAME}-{role.value}-{os.getpid()}"
