"""Core primitives for netdispatch."""

from .models import (
    Command,
    CommandCompleted,
    CommandResult,
    CommandState,
    CommandStatus,
    CommandType,
    ErrorCode,
)
from .outcomes import ClosedAttempt, RecentOutcomes
from .protocols import (
    AccountRecord,
    BrokerClient,
    DeviceControlError,
    DeviceController,
    DeviceDirectory,
    DeviceRecord,
    DirectoryError,
    MessageHandler,
)
from .wire import (
    MessageDecodeError,
    decode_command,
    decode_completed,
    decode_result,
    encode_message,
)

__all__ = [
    "AccountRecord",
    "BrokerClient",
    "ClosedAttempt",
    "Command",
    "CommandCompleted",
    "CommandResult",
    "CommandState",
    "CommandStatus",
    "CommandType",
    "DeviceControlError",
    "DeviceController",
    "DeviceDirectory",
    "DeviceRecord",
    "DirectoryError",
    "ErrorCode",
    "MessageDecodeError",
    "MessageHandler",
    "RecentOutcomes",
    "decode_command",
    "decode_completed",
    "decode_result",
    "encode_message",
]
