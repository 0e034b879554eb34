"""Command producer: publishes device commands to the commands topic."""

from __future__ import annotations

import dataclasses
import logging
import uuid

from .core.models import Command
from .core.protocols import BrokerClient
from .core.wire import encode_message

LOGGER = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """Raised when a command cannot be handed to the broker."""

    def __init__(self, message: str, *, command_id: str) -> None:
        super().__init__(message)
        self.command_id = command_id


def new_command_id() -> str:
    return str(uuid.uuid4())


class CommandProducer:
    """Publishes commands and returns their correlation id without waiting.

    Input is trusted: required fields are the caller's responsibility. Each
    call performs exactly one publish and never retries; broker failures
    surface as :class:`DispatchError`.
    """

    def __init__(self, broker: BrokerClient, topic: str) -> None:
        self._broker = broker
        self._topic = topic

    def prepare(self, command: Command) -> Command:
        """Return ``command`` carrying a command id, assigning a fresh one if absent."""
        if command.command_id:
            return command
        return dataclasses.replace(command, command_id=new_command_id())

    def publish(self, command: Command) -> Command:
        """Publish ``command`` and return the value that was actually sent."""
        prepared = self.prepare(command)
        assert prepared.command_id is not None
        payload = encode_message(prepared.as_dict())

        try:
            self._broker.publish(self._topic, payload, qos=1, retain=False)
        except Exception as exc:
            LOGGER.error(
                "Failed to dispatch %s command %s for device %s: %s",
                prepared.type.value,
                prepared.command_id,
                prepared.device_id,
                exc,
            )
            raise DispatchError(
                f"Broker rejected command {prepared.command_id}: {exc}",
                command_id=prepared.command_id,
            ) from exc

        LOGGER.info(
            "Dispatched %s command %s for device %s",
            prepared.type.value,
            prepared.command_id,
            prepared.device_id,
        )
        return prepared

    def dispatch(self, command: Command) -> str:
        """Publish ``command`` and return its command id."""
        return self.publish(command).command_id  # type: ignore[return-value]
