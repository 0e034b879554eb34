"""JSON wire codec for broker payloads."""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

from .models import (
    Command,
    CommandCompleted,
    CommandResult,
    CommandState,
    CommandType,
    ErrorCode,
)


class MessageDecodeError(RuntimeError):
    """Raised when a broker payload cannot be turned into a domain object."""

    def __init__(
        self,
        message: str,
        *,
        code: str = ErrorCode.INVALID_PAYLOAD.value,
        command_id: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.command_id = command_id
        self.device_id = device_id


def encode_message(document: Mapping[str, Any]) -> bytes:
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def _load_document(raw_payload: bytes) -> Dict[str, Any]:
    try:
        decoded = raw_payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MessageDecodeError("Payload is not valid UTF-8") from exc

    try:
        data = json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise MessageDecodeError("Payload is not valid JSON") from exc

    if not isinstance(data, dict):
        raise MessageDecodeError("Payload must be a JSON object")
    return data


def _optional_text(data: Mapping[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _timestamp(data: Mapping[str, Any], **context: Optional[str]) -> int:
    value = data.get("timestamp")
    if value is None:
        raise MessageDecodeError("Missing timestamp in payload", **context)
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError) as exc:
        raise MessageDecodeError(
            "timestamp must be epoch milliseconds", **context
        ) from exc


def decode_command(raw_payload: bytes) -> Command:
    return command_from_dict(_load_document(raw_payload))


def command_from_dict(data: Mapping[str, Any]) -> Command:
    command_id = _optional_text(data, "commandId")
    device_id = _optional_text(data, "deviceId")
    context = {"command_id": command_id, "device_id": device_id}

    if not command_id:
        raise MessageDecodeError("Missing commandId in payload", device_id=device_id)

    type_value = _optional_text(data, "type")
    try:
        command_type = CommandType(type_value)
    except ValueError as exc:
        raise MessageDecodeError(
            f"Unknown command type: {type_value!r}",
            code=ErrorCode.INVALID_COMMAND.value,
            **context,
        ) from exc

    account_id = _optional_text(data, "accountId")
    mac_address = _optional_text(data, "macAddress")
    if not device_id or not account_id or not mac_address:
        raise MessageDecodeError(
            "deviceId, accountId and macAddress are required",
            code=ErrorCode.INVALID_COMMAND.value,
            **context,
        )

    return Command(
        type=command_type,
        device_id=device_id,
        account_id=account_id,
        mac_address=mac_address,
        ip_address=_optional_text(data, "ipAddress"),
        pool_name=_optional_text(data, "poolName"),
        timestamp=_timestamp(data, **context),
        command_id=command_id,
    )


def decode_result(raw_payload: bytes) -> CommandResult:
    data = _load_document(raw_payload)

    command_id = _optional_text(data, "commandId")
    if not command_id:
        raise MessageDecodeError("Missing commandId in payload")

    success = data.get("success")
    if not isinstance(success, bool):
        raise MessageDecodeError(
            "success must be a boolean", command_id=command_id
        )

    return CommandResult(
        command_id=command_id,
        device_id=_optional_text(data, "deviceId") or "",
        success=success,
        result=data.get("result"),
        error=_optional_text(data, "error"),
        error_code=_optional_text(data, "errorCode"),
        timestamp=_timestamp(data, command_id=command_id),
    )


def decode_completed(raw_payload: bytes) -> CommandCompleted:
    data = _load_document(raw_payload)

    command_id = _optional_text(data, "commandId")
    if not command_id:
        raise MessageDecodeError("Missing commandId in payload")

    status_value = _optional_text(data, "status")
    try:
        status = CommandState(status_value)
    except ValueError as exc:
        raise MessageDecodeError(
            f"Unknown command status: {status_value!r}", command_id=command_id
        ) from exc

    try:
        retry_count = int(data.get("retryCount", 0))
    except (TypeError, ValueError, OverflowError) as exc:
        raise MessageDecodeError(
            "retryCount must be an integer", command_id=command_id
        ) from exc

    return CommandCompleted(
        command_id=command_id,
        device_id=_optional_text(data, "deviceId") or "",
        account_id=_optional_text(data, "accountId") or "",
        success=status is CommandState.COMPLETED,
        status=status,
        retry_count=retry_count,
        error=_optional_text(data, "error"),
        origin_command_id=_optional_text(data, "originCommandId"),
        timestamp=_timestamp(data, command_id=command_id),
    )
