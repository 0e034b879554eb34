"""Domain models for device commands, their results and their tracking."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def now_ms() -> int:
    """Return the current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CommandType(str, Enum):
    """Device actions that can be dispatched."""

    ADD_LEASE = "ADD_DHCP"
    REMOVE_LEASE = "REMOVE_DHCP"
    BLOCK_CLIENT = "BLOCK_CLIENT"
    UNBLOCK_CLIENT = "UNBLOCK_CLIENT"
    GET_STATS = "GET_STATS"


class CommandState(str, Enum):
    """Lifecycle of one monitored dispatch attempt."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not CommandState.PENDING


class ErrorCode(str, Enum):
    """Machine-readable failure classes carried on command results."""

    DEVICE_NOT_FOUND = "device_not_found"
    ACCOUNT_NOT_FOUND = "account_not_found"
    INVALID_COMMAND = "invalid_command"
    INVALID_PAYLOAD = "invalid_payload"
    EXECUTION_FAILED = "execution_failed"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    DISPATCH_FAILED = "dispatch_failed"


# Failures that a retry cannot fix.
TERMINAL_ERROR_CODES = frozenset(
    {
        ErrorCode.DEVICE_NOT_FOUND.value,
        ErrorCode.ACCOUNT_NOT_FOUND.value,
        ErrorCode.INVALID_COMMAND.value,
        ErrorCode.INVALID_PAYLOAD.value,
    }
)


@dataclass(frozen=True, slots=True)
class Command:
    """An instruction to perform one device-side action.

    Instances never change once published; a retry is a new value built with
    :func:`dataclasses.replace`.
    """

    type: CommandType
    device_id: str
    account_id: str
    mac_address: str
    ip_address: Optional[str] = None
    pool_name: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)
    command_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "commandId": self.command_id,
            "type": self.type.value,
            "deviceId": self.device_id,
            "accountId": self.account_id,
            "macAddress": self.mac_address,
            "timestamp": self.timestamp,
        }
        if self.ip_address:
            document["ipAddress"] = self.ip_address
        if self.pool_name:
            document["poolName"] = self.pool_name
        return document


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of executing one command, published by the executor."""

    command_id: str
    device_id: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    @property
    def retryable(self) -> bool:
        return not self.success and self.error_code not in TERMINAL_ERROR_CODES

    def as_dict(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "commandId": self.command_id,
            "deviceId": self.device_id,
            "success": self.success,
            "timestamp": self.timestamp,
        }
        if self.result is not None:
            document["result"] = self.result
        if self.error is not None:
            document["error"] = self.error
        if self.error_code is not None:
            document["errorCode"] = self.error_code
        return document


@dataclass(slots=True)
class CommandStatus:
    """Monitor bookkeeping for one outstanding dispatch attempt."""

    command: Command
    command_id: str
    device_id: str
    account_id: str
    type: CommandType
    status: CommandState = CommandState.PENDING
    retry_count: int = 0
    max_retries: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    origin_id: str = ""

    @classmethod
    def for_command(
        cls,
        command: Command,
        *,
        retry_count: int,
        max_retries: int,
        origin_id: Optional[str] = None,
    ) -> "CommandStatus":
        if not command.command_id:
            raise ValueError("Command must carry a command_id to be tracked")
        return cls(
            command=command,
            command_id=command.command_id,
            device_id=command.device_id,
            account_id=command.account_id,
            type=command.type,
            retry_count=retry_count,
            max_retries=max_retries,
            origin_id=origin_id or command.command_id,
        )

    @property
    def retries_left(self) -> bool:
        return self.retry_count < self.max_retries


@dataclass(frozen=True, slots=True)
class CommandCompleted:
    """Terminal notification published once per logical command."""

    command_id: str
    device_id: str
    account_id: str
    success: bool
    status: CommandState
    retry_count: int = 0
    error: Optional[str] = None
    origin_command_id: Optional[str] = None
    timestamp: int = field(default_factory=now_ms)

    @classmethod
    def from_status(cls, status: CommandStatus) -> "CommandCompleted":
        return cls(
            command_id=status.command_id,
            device_id=status.device_id,
            account_id=status.account_id,
            success=status.status is CommandState.COMPLETED,
            status=status.status,
            retry_count=status.retry_count,
            error=status.error,
            origin_command_id=status.origin_id or status.command_id,
        )

    def as_dict(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "type": "command_completed",
            "commandId": self.command_id,
            "deviceId": self.device_id,
            "accountId": self.account_id,
            "success": self.success,
            "status": self.status.value,
            "retryCount": self.retry_count,
            "timestamp": self.timestamp,
        }
        if self.origin_command_id is not None:
            document["originCommandId"] = self.origin_command_id
        if self.error is not None:
            document["error"] = self.error
        return document
