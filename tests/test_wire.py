"""Tests for the JSON wire codec and domain models."""

import json

import pytest

from netdispatch.core.models import (
    Command,
    CommandCompleted,
    CommandResult,
    CommandState,
    CommandStatus,
    CommandType,
)
from netdispatch.core.wire import (
    MessageDecodeError,
    decode_command,
    decode_completed,
    decode_result,
    encode_message,
)


def test_decode_command_reads_camel_case_payload():
    payload = json.dumps(
        {
            "commandId": "cmd-1",
            "type": "ADD_DHCP",
            "deviceId": "dev-1",
            "accountId": "acc-1",
            "macAddress": "AA:BB:CC:DD:EE:FF",
            "ipAddress": "10.0.0.50",
            "poolName": "dhcp1",
            "timestamp": 1700000000000,
        }
    ).encode()

    command = decode_command(payload)

    assert command.type is CommandType.ADD_LEASE
    assert command.command_id == "cmd-1"
    assert command.ip_address == "10.0.0.50"
    assert command.pool_name == "dhcp1"
    assert command.timestamp == 1700000000000


@pytest.mark.parametrize(
    ("payload", "code", "command_id"),
    [
        (b"\x80", "invalid_payload", None),
        (b"[1, 2]", "invalid_payload", None),
        (b'{"type": "ADD_DHCP"}', "invalid_payload", None),
        (
            b'{"commandId": "c", "type": "NOPE", "deviceId": "d", "accountId": "a",'
            b' "macAddress": "m", "timestamp": 1}',
            "invalid_command",
            "c",
        ),
        (
            b'{"commandId": "c", "type": "BLOCK_CLIENT", "deviceId": "d", "timestamp": 1}',
            "invalid_command",
            "c",
        ),
        (
            b'{"commandId": "c", "type": "BLOCK_CLIENT", "deviceId": "d",'
            b' "accountId": "a", "macAddress": "m"}',
            "invalid_payload",
            "c",
        ),
    ],
)
def test_decode_command_errors_carry_correlation(payload, code, command_id):
    with pytest.raises(MessageDecodeError) as excinfo:
        decode_command(payload)

    assert excinfo.value.code == code
    assert excinfo.value.command_id == command_id


def test_decode_result_requires_boolean_success():
    with pytest.raises(MessageDecodeError) as excinfo:
        decode_result(b'{"commandId": "cmd-1", "success": 1, "timestamp": 1}')

    assert excinfo.value.command_id == "cmd-1"


@pytest.mark.parametrize("timestamp", [b"1e400", b"-1e400", b"Infinity", b"NaN"])
def test_decode_result_rejects_non_finite_timestamp(timestamp):
    with pytest.raises(MessageDecodeError) as excinfo:
        decode_result(
            b'{"commandId": "cmd-1", "success": true, "timestamp": ' + timestamp + b"}"
        )

    assert excinfo.value.command_id == "cmd-1"


def test_decode_result_reads_error_code():
    result = decode_result(
        encode_message(
            CommandResult(
                command_id="cmd-1",
                device_id="dev-1",
                success=False,
                error="device not found",
                error_code="device_not_found",
                timestamp=5,
            ).as_dict()
        )
    )

    assert result.success is False
    assert result.error == "device not found"
    assert result.error_code == "device_not_found"
    assert result.retryable is False


def test_execution_failures_are_retryable():
    result = CommandResult(command_id="c", device_id="d", success=False, error="x")
    assert result.retryable is True
    assert CommandResult(command_id="c", device_id="d", success=True).retryable is False


def test_status_requires_command_id():
    command = Command(
        type=CommandType.GET_STATS, device_id="d", account_id="a", mac_address="m"
    )
    with pytest.raises(ValueError):
        CommandStatus.for_command(command, retry_count=0, max_retries=3)


def test_completed_notification_from_status():
    command = Command(
        type=CommandType.UNBLOCK_CLIENT,
        device_id="dev-1",
        account_id="acc-1",
        mac_address="m",
        command_id="cmd-9",
    )
    status = CommandStatus.for_command(command, retry_count=1, max_retries=3)
    status.status = CommandState.TIMEOUT
    status.error = "deadline exceeded"

    document = CommandCompleted.from_status(status).as_dict()

    assert document["type"] == "command_completed"
    assert document["commandId"] == "cmd-9"
    assert document["success"] is False
    assert document["status"] == "timeout"
    assert document["retryCount"] == 1
    assert document["error"] == "deadline exceeded"
    assert CommandState.TIMEOUT.is_terminal
    assert not CommandState.PENDING.is_terminal


def test_completed_notification_names_its_origin_across_retries():
    command = Command(
        type=CommandType.BLOCK_CLIENT,
        device_id="dev-1",
        account_id="acc-1",
        mac_address="m",
        command_id="cmd-retry",
    )
    status = CommandStatus.for_command(
        command, retry_count=2, max_retries=3, origin_id="cmd-first"
    )
    status.status = CommandState.COMPLETED

    notification = decode_completed(
        encode_message(CommandCompleted.from_status(status).as_dict())
    )

    assert notification.command_id == "cmd-retry"
    assert notification.origin_command_id == "cmd-first"
    assert notification.success is True
    assert notification.status is CommandState.COMPLETED
    assert notification.retry_count == 2


def test_decode_completed_rejects_unknown_status():
    with pytest.raises(MessageDecodeError) as excinfo:
        decode_completed(
            b'{"type": "command_completed", "commandId": "c", "status": "lost",'
            b' "timestamp": 1}'
        )

    assert excinfo.value.command_id == "c"
