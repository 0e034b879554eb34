"""Device action executor: consumes commands and publishes their results."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .core.models import Command, CommandResult, CommandType, ErrorCode
from .core.protocols import (
    AccountRecord,
    BrokerClient,
    DeviceControlError,
    DeviceController,
    DeviceDirectory,
    DeviceRecord,
    DirectoryError,
)
from .core.wire import MessageDecodeError, decode_command, encode_message

LOGGER = logging.getLogger(__name__)

DEVICE_NOT_FOUND = "device not found"
ACCOUNT_NOT_FOUND = "account not found"


class InvalidCommandError(ValueError):
    """Raised when a command lacks the fields its type requires."""


class DeviceActionExecutor:
    """Consumes commands from the broker and runs them against devices.

    Exactly one result is published for every consumed command, whatever
    happens while resolving or executing it. Commands are not deduplicated:
    device actions are expected to be idempotent.
    """

    def __init__(
        self,
        broker: BrokerClient,
        directory: DeviceDirectory,
        controller: DeviceController,
        *,
        commands_topic: str,
        results_topic: str,
        group: Optional[str] = None,
        max_concurrency: int = 8,
        action_timeout: float = 10.0,
    ) -> None:
        self._broker = broker
        self._directory = directory
        self._controller = controller
        self._commands_topic = commands_topic
        self._results_topic = results_topic
        self._group = group
        self._action_timeout = action_timeout
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._handler_registered = False
        self._inflight = 0

    async def start(self) -> None:
        if self._handler_registered:
            raise RuntimeError("DeviceActionExecutor already started")

        self._broker.subscribe(
            self._commands_topic, self._handle_message, group=self._group, qos=1
        )
        self._handler_registered = True
        LOGGER.info(
            "Device action executor consuming %s (group=%s)",
            self._commands_topic,
            self._group,
        )

    async def stop(self) -> None:
        if not self._handler_registered:
            return

        try:
            self._broker.unsubscribe(self._commands_topic, group=self._group)
        except Exception as exc:  # pragma: no cover - best-effort cleanup
            LOGGER.warning("Failed to unsubscribe from %s: %s", self._commands_topic, exc)
        finally:
            self._handler_registered = False

    @property
    def pending_count(self) -> int:
        return self._inflight

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            command = decode_command(payload)
        except MessageDecodeError as exc:
            if not exc.command_id:
                LOGGER.warning(
                    "Dropping uncorrelatable command payload on %s: %s", topic, exc
                )
                return
            LOGGER.warning("Invalid command %s: %s", exc.command_id, exc)
            self._publish_result(
                CommandResult(
                    command_id=exc.command_id,
                    device_id=exc.device_id or "",
                    success=False,
                    error=str(exc),
                    error_code=exc.code,
                )
            )
            return

        LOGGER.info(
            "Received %s command %s for device %s",
            command.type.value,
            command.command_id,
            command.device_id,
        )
        result = await self.execute(command)
        self._publish_result(result)

    async def execute(self, command: Command) -> CommandResult:
        """Run one command and describe its outcome. Never raises."""
        self._inflight += 1
        try:
            async with self._semaphore:
                return await self._execute(command)
        finally:
            self._inflight -= 1

    async def _execute(self, command: Command) -> CommandResult:
        command_id = command.command_id or ""

        def failure(error: str, code: ErrorCode) -> CommandResult:
            return CommandResult(
                command_id=command_id,
                device_id=command.device_id,
                success=False,
                error=error,
                error_code=code.value,
            )

        try:
            device = await self._directory.get_device(command.device_id)
            account = (
                await self._directory.get_account(command.account_id)
                if device is not None
                else None
            )
        except DirectoryError as exc:
            LOGGER.warning("Directory lookup failed for %s: %s", command_id, exc)
            return failure(str(exc), ErrorCode.EXECUTION_FAILED)
        except Exception as exc:
            LOGGER.exception("Unexpected directory error for command %s", command_id)
            return failure(str(exc) or type(exc).__name__, ErrorCode.EXECUTION_FAILED)

        if device is None:
            LOGGER.error("Device %s not found for command %s", command.device_id, command_id)
            return failure(DEVICE_NOT_FOUND, ErrorCode.DEVICE_NOT_FOUND)

        if account is None:
            LOGGER.error(
                "Account %s not found for command %s", command.account_id, command_id
            )
            return failure(ACCOUNT_NOT_FOUND, ErrorCode.ACCOUNT_NOT_FOUND)

        try:
            async with asyncio.timeout(self._action_timeout):
                details = await self._perform(command, device, account)
        except InvalidCommandError as exc:
            return failure(str(exc), ErrorCode.INVALID_COMMAND)
        except DeviceControlError as exc:
            LOGGER.warning(
                "%s failed on device %s: %s", command.type.value, device.host, exc
            )
            return failure(str(exc), ErrorCode.EXECUTION_FAILED)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "%s timed out on device %s after %.1fs",
                command.type.value,
                device.host,
                self._action_timeout,
            )
            return failure(
                f"device action timed out after {self._action_timeout:.1f}s",
                ErrorCode.EXECUTION_FAILED,
            )
        except Exception as exc:
            LOGGER.exception("Unexpected error executing command %s", command_id)
            return failure(str(exc) or type(exc).__name__, ErrorCode.EXECUTION_FAILED)

        if details is None:
            return failure(
                f"no statistics available for {command.mac_address}",
                ErrorCode.EXECUTION_FAILED,
            )

        LOGGER.info(
            "%s command %s succeeded on device %s",
            command.type.value,
            command_id,
            command.device_id,
        )
        return CommandResult(
            command_id=command_id,
            device_id=command.device_id,
            success=True,
            result=details,
        )

    async def _perform(
        self, command: Command, device: DeviceRecord, account: AccountRecord
    ) -> Optional[dict[str, Any]]:
        controller = self._controller
        mac_address = command.mac_address

        if command.type is CommandType.ADD_LEASE:
            if not command.ip_address or not command.pool_name:
                raise InvalidCommandError(
                    f"{command.type.value} requires ipAddress and poolName"
                )
            return await controller.add_lease(
                device,
                mac_address=mac_address,
                ip_address=command.ip_address,
                pool_name=command.pool_name,
                comment=_lease_comment(account),
            )

        if command.type is CommandType.REMOVE_LEASE:
            return await controller.remove_lease(device, mac_address)

        if command.type is CommandType.BLOCK_CLIENT:
            return await controller.block_client(device, mac_address)

        if command.type is CommandType.UNBLOCK_CLIENT:
            return await controller.unblock_client(device, mac_address)

        if command.type is CommandType.GET_STATS:
            return await controller.get_client_stats(device, mac_address)

        raise InvalidCommandError(f"Unsupported command type: {command.type!r}")

    def _publish_result(self, result: CommandResult) -> None:
        try:
            self._broker.publish(
                self._results_topic, encode_message(result.as_dict()), qos=1
            )
        except Exception:
            LOGGER.exception("Failed to publish result for command %s", result.command_id)
            return
        LOGGER.debug(
            "Published result for %s (success=%s)", result.command_id, result.success
        )


def _lease_comment(account: AccountRecord) -> str:
    comment = f"account {account.account_number}"
    if account.client_name:
        comment = f"{comment}, client {account.client_name}"
    return comment
