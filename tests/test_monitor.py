"""Tests for the command monitor."""

import asyncio
import json
import logging

import pytest

from netdispatch.core.models import Command, CommandResult, CommandState, CommandType
from netdispatch.ledger import CommandLedger
from netdispatch.monitor import CommandMonitor
from netdispatch.producer import CommandProducer, DispatchError

COMMANDS = "netdispatch/commands"
RESULTS = "netdispatch/results"
NOTIFICATIONS = "netdispatch/notifications"


def make_command(command_id=None, **overrides) -> Command:
    fields = dict(
        type=CommandType.ADD_LEASE,
        device_id="dev-1",
        account_id="acc-1",
        mac_address="AA:BB:CC:DD:EE:FF",
        ip_address="10.0.0.50",
        pool_name="dhcp1",
        timestamp=1_700_000_000_000,
        command_id=command_id,
    )
    fields.update(overrides)
    return Command(**fields)


def make_monitor(broker, *, producer_broker=None, **kwargs) -> CommandMonitor:
    producer = CommandProducer(producer_broker or broker, COMMANDS)
    options = dict(
        results_topic=RESULTS,
        notifications_topic=NOTIFICATIONS,
        group="monitor",
        default_timeout=30.0,
        max_retries=3,
        retry_delay=0.0,
    )
    options.update(kwargs)
    return CommandMonitor(broker, producer, **options)


def failure(command_id: str, error: str = "device unreachable", code=None) -> CommandResult:
    return CommandResult(
        command_id=command_id,
        device_id="dev-1",
        success=False,
        error=error,
        error_code=code,
    )


def success(command_id: str, result=None) -> CommandResult:
    return CommandResult(
        command_id=command_id, device_id="dev-1", success=True, result=result
    )


@pytest.mark.asyncio
async def test_start_subscribes_to_results_under_monitor_group(broker):
    monitor = make_monitor(broker)
    await monitor.start()

    assert (RESULTS, "monitor") in broker.subscriptions

    with pytest.raises(RuntimeError):
        await monitor.start()

    await monitor.stop()
    assert broker.unsubscriptions == [(RESULTS, "monitor")]


@pytest.mark.asyncio
async def test_success_before_deadline_completes_and_notifies(broker):
    monitor = make_monitor(broker, default_timeout=0.05)
    await monitor.start()

    assert monitor.register_command(make_command("cmd-ok")) is True
    status = monitor.get_command_status("cmd-ok")
    assert status is not None
    assert status.status is CommandState.PENDING

    await broker.deliver(
        RESULTS, success("cmd-ok", {"action": "created"}).as_dict()
    )

    assert monitor.get_command_status("cmd-ok") is None
    notifications = broker.messages(NOTIFICATIONS)
    assert len(notifications) == 1
    assert notifications[0]["type"] == "command_completed"
    assert notifications[0]["commandId"] == "cmd-ok"
    assert notifications[0]["success"] is True
    assert notifications[0]["status"] == "completed"
    assert notifications[0]["accountId"] == "acc-1"

    # The deadline has passed; the cancelled timer must not fire.
    await asyncio.sleep(0.08)
    assert len(broker.messages(NOTIFICATIONS)) == 1
    assert broker.messages(COMMANDS) == []

    await monitor.stop()


@pytest.mark.asyncio
async def test_status_views_are_copies(broker):
    monitor = make_monitor(broker)
    await monitor.start()
    monitor.register_command(make_command("cmd-copy"))

    snapshot = monitor.get_command_status("cmd-copy")
    snapshot.status = CommandState.FAILED
    snapshot.retry_count = 99

    fresh = monitor.get_command_status("cmd-copy")
    assert fresh.status is CommandState.PENDING
    assert fresh.retry_count == 0

    active = monitor.get_active_commands()
    active.clear()
    assert len(monitor.get_active_commands()) == 1

    await monitor.stop()


@pytest.mark.asyncio
async def test_register_twice_keeps_single_record_and_timer(broker):
    monitor = make_monitor(broker, max_retries=0)
    await monitor.start()

    command = make_command("cmd-dup")
    assert monitor.register_command(command, timeout=0.05) is True
    first_timer = monitor._registry["cmd-dup"].timer

    assert monitor.register_command(command, timeout=0.05) is False
    assert monitor._registry["cmd-dup"].timer is first_timer
    assert monitor.get_command_stats()["total"] == 1

    await asyncio.sleep(0.1)
    notifications = broker.messages(NOTIFICATIONS)
    assert len(notifications) == 1
    assert notifications[0]["status"] == "timeout"

    await monitor.stop()


@pytest.mark.asyncio
async def test_timeout_with_retries_left_registers_one_fresh_attempt(broker):
    monitor = make_monitor(broker, max_retries=2)
    await monitor.start()

    monitor.register_command(make_command("cmd-slow"), timeout=0.05)
    await asyncio.sleep(0.075)

    assert monitor.get_command_status("cmd-slow") is None
    active = monitor.get_active_commands()
    assert len(active) == 1
    retry = active[0]
    assert retry.command_id != "cmd-slow"
    assert retry.retry_count == 1
    assert retry.max_retries == 2
    assert broker.messages(NOTIFICATIONS) == []

    # The re-dispatch carries every field of the original command.
    republished = broker.messages(COMMANDS)
    assert len(republished) == 1
    assert republished[0]["commandId"] == retry.command_id
    assert republished[0]["macAddress"] == "AA:BB:CC:DD:EE:FF"
    assert republished[0]["ipAddress"] == "10.0.0.50"
    assert republished[0]["poolName"] == "dhcp1"
    assert republished[0]["type"] == "ADD_DHCP"

    await monitor.stop()


@pytest.mark.asyncio
async def test_failure_on_last_attempt_is_terminal(broker):
    monitor = make_monitor(broker)
    await monitor.start()

    monitor.register_command(make_command("cmd-last"), retry_count=2, max_retries=2)
    monitor.on_result(failure("cmd-last"))

    assert monitor.get_command_status("cmd-last") is None
    assert monitor.get_command_stats() == {
        "pending": 0,
        "completed": 0,
        "failed": 0,
        "timeout": 0,
        "total": 0,
    }
    notification = broker.messages(NOTIFICATIONS)[0]
    assert notification["status"] == "failed"
    assert notification["success"] is False
    assert notification["retryCount"] == 2
    assert notification["error"] == "device unreachable"
    assert broker.messages(COMMANDS) == []

    await monitor.stop()


@pytest.mark.asyncio
async def test_resolution_errors_are_not_retried(broker):
    monitor = make_monitor(broker, max_retries=3)
    await monitor.start()

    monitor.register_command(make_command("cmd-nodev"))
    monitor.on_result(failure("cmd-nodev", "device not found", "device_not_found"))

    await asyncio.sleep(0)
    assert monitor.get_active_commands() == []
    assert broker.messages(COMMANDS) == []
    notification = broker.messages(NOTIFICATIONS)[0]
    assert notification["status"] == "failed"
    assert notification["error"] == "device not found"

    await monitor.stop()


@pytest.mark.asyncio
async def test_execution_failure_is_retried_with_new_id(broker):
    monitor = make_monitor(broker, max_retries=1)
    await monitor.start()

    monitor.register_command(make_command("cmd-flaky"))
    monitor.on_result(failure("cmd-flaky", code="execution_failed"))
    await asyncio.sleep(0.01)

    active = monitor.get_active_commands()
    assert [status.retry_count for status in active] == [1]
    new_id = active[0].command_id

    monitor.on_result(success(new_id))
    notification = broker.messages(NOTIFICATIONS)[0]
    assert notification["commandId"] == new_id
    assert notification["success"] is True
    assert notification["retryCount"] == 1

    await monitor.stop()


@pytest.mark.asyncio
async def test_success_during_retry_delay_cancels_retry(broker):
    monitor = make_monitor(broker, retry_delay=10.0)
    await monitor.start()

    monitor.register_command(make_command("cmd-late"))
    monitor.on_result(failure("cmd-late"))
    assert monitor.get_command_status("cmd-late") is not None

    # A second failure while waiting is ignored.
    monitor.on_result(failure("cmd-late"))
    monitor.on_result(success("cmd-late"))
    await asyncio.sleep(0)

    assert monitor.get_active_commands() == []
    assert broker.messages(COMMANDS) == []
    notifications = broker.messages(NOTIFICATIONS)
    assert len(notifications) == 1
    assert notifications[0]["status"] == "completed"

    await monitor.stop()


@pytest.mark.asyncio
async def test_failed_redispatch_is_terminal(broker, broker_factory):
    producer_broker = broker_factory()
    producer_broker.fail_publish = RuntimeError("broker offline")
    monitor = make_monitor(broker, producer_broker=producer_broker, max_retries=2)
    await monitor.start()

    monitor.register_command(make_command("cmd-offline"))
    monitor.on_result(failure("cmd-offline"))
    await asyncio.sleep(0.01)

    assert monitor.get_active_commands() == []
    notification = broker.messages(NOTIFICATIONS)[0]
    assert notification["commandId"] == "cmd-offline"
    assert notification["status"] == "failed"
    assert notification["error"].startswith("retry dispatch failed:")

    await monitor.stop()


@pytest.mark.asyncio
async def test_orphan_and_superseded_results_are_discarded(broker, caplog):
    monitor = make_monitor(broker, max_retries=1)
    await monitor.start()

    with caplog.at_level(logging.INFO, logger="netdispatch.monitor"):
        monitor.on_result(success("never-registered"))

        monitor.register_command(make_command("cmd-old"))
        monitor.on_result(failure("cmd-old"))
        await asyncio.sleep(0.01)
        monitor.on_result(success("cmd-old"))

    assert broker.messages(NOTIFICATIONS) == []
    assert len(monitor.get_active_commands()) == 1
    assert "unknown command never-registered" in caplog.text
    assert "superseded by retry" in caplog.text

    await monitor.stop()


@pytest.mark.asyncio
async def test_undecodable_results_are_ignored(broker):
    monitor = make_monitor(broker)
    await monitor.start()
    monitor.register_command(make_command("cmd-keep"))

    await broker.deliver(RESULTS, b"not-json")
    await broker.deliver(RESULTS, {"commandId": "cmd-keep", "success": "yes"})

    assert monitor.get_command_status("cmd-keep") is not None
    assert broker.messages(NOTIFICATIONS) == []

    await monitor.stop()


@pytest.mark.asyncio
async def test_stop_abandons_commands_without_notifying(broker):
    monitor = make_monitor(broker, retry_delay=10.0)
    await monitor.start()

    monitor.register_command(make_command("cmd-a"), timeout=0.03)
    monitor.register_command(make_command("cmd-b"))
    monitor.on_result(failure("cmd-b"))

    await monitor.stop()
    await asyncio.sleep(0.05)

    assert monitor.get_active_commands() == []
    assert broker.messages(NOTIFICATIONS) == []
    assert broker.messages(COMMANDS) == []


@pytest.mark.asyncio
async def test_submit_dispatches_and_tracks(broker):
    monitor = make_monitor(broker)
    await monitor.start()
    completed = []
    monitor.add_completion_listener(completed.append)

    command_id = monitor.submit(make_command())

    assert broker.messages(COMMANDS)[0]["commandId"] == command_id
    status = monitor.get_command_status(command_id)
    assert status.command.mac_address == "AA:BB:CC:DD:EE:FF"

    monitor.on_result(success(command_id))
    assert [item.command_id for item in completed] == [command_id]
    assert completed[0].success is True

    await monitor.stop()


@pytest.mark.asyncio
async def test_submit_registers_nothing_when_broker_refuses(broker):
    monitor = make_monitor(broker)
    await monitor.start()
    broker.fail_publish = RuntimeError("not connected")

    with pytest.raises(DispatchError):
        monitor.submit(make_command())

    assert monitor.get_active_commands() == []
    broker.fail_publish = None
    await monitor.stop()


@pytest.mark.asyncio
async def test_start_resumes_outstanding_commands_from_ledger(broker, tmp_path):
    ledger_path = tmp_path / "ledger.jsonl"
    first = make_monitor(broker, ledger=CommandLedger(ledger_path))
    await first.start()
    first.register_command(make_command("cmd-open"), retry_count=1, max_retries=3)
    first.register_command(make_command("cmd-done"))
    first.on_result(success("cmd-done"))
    # Simulate a crash: the registry is lost without a clean shutdown.
    first._registry.clear()

    second = make_monitor(broker, ledger=CommandLedger(ledger_path))
    await second.start()

    resumed = second.get_command_status("cmd-open")
    assert resumed is not None
    assert resumed.retry_count == 1
    assert resumed.max_retries == 3
    assert second.get_command_status("cmd-done") is None

    lines = [json.loads(line) for line in ledger_path.read_text().splitlines()]
    assert [line["commandId"] for line in lines] == ["cmd-open"]

    await second.stop()


@pytest.mark.asyncio
async def test_scenario_failure_without_retries(broker):
    monitor = make_monitor(broker, max_retries=0)
    await monitor.start()

    monitor.register_command(
        make_command("cmd-1", type=CommandType.ADD_LEASE), max_retries=0
    )
    await broker.deliver(
        RESULTS,
        {"commandId": "cmd-1", "success": False, "error": "timeout", "timestamp": 1},
    )

    notifications = broker.messages(NOTIFICATIONS)
    assert len(notifications) == 1
    assert notifications[0]["commandId"] == "cmd-1"
    assert notifications[0]["deviceId"] == "dev-1"
    assert notifications[0]["accountId"] == "acc-1"
    assert notifications[0]["status"] == "failed"
    assert notifications[0]["error"] == "timeout"
    assert monitor.get_command_stats()["total"] == 0

    await monitor.stop()


@pytest.mark.asyncio
async def test_scenario_timeout_after_one_retry(broker):
    monitor = make_monitor(broker, max_retries=1, retry_delay=0.0)
    await monitor.start()

    monitor.register_command(make_command("cmd-2"), timeout=0.05, max_retries=1)

    await asyncio.sleep(0.075)
    stats = monitor.get_command_stats()
    assert stats["total"] == 1
    assert stats["pending"] == 1
    assert stats["completed"] == stats["failed"] == stats["timeout"] == 0
    retry = monitor.get_active_commands()[0]
    assert retry.command_id != "cmd-2"
    assert retry.retry_count == 1
    assert broker.messages(NOTIFICATIONS) == []

    await asyncio.sleep(0.1)
    assert monitor.get_command_stats()["total"] == 0
    notifications = broker.messages(NOTIFICATIONS)
    assert len(notifications) == 1
    assert notifications[0]["commandId"] == retry.command_id
    assert notifications[0]["status"] == "timeout"
    assert notifications[0]["error"] == "deadline exceeded"
    assert notifications[0]["retryCount"] == 1

    await monitor.stop()


@pytest.mark.asyncio
async def test_commands_published_elsewhere_are_adopted(broker):
    monitor = make_monitor(broker, commands_topic=COMMANDS, max_retries=0)
    await monitor.start()
    assert (COMMANDS, "monitor") in broker.subscriptions

    foreign = make_command("cmd-cli").as_dict()
    await broker.deliver(COMMANDS, foreign)

    status = monitor.get_command_status("cmd-cli")
    assert status is not None
    assert status.command.mac_address == "AA:BB:CC:DD:EE:FF"

    await broker.deliver(
        RESULTS,
        {"commandId": "cmd-cli", "deviceId": "dev-1", "success": True, "timestamp": 1},
    )
    notifications = broker.messages(NOTIFICATIONS)
    assert [n["commandId"] for n in notifications] == ["cmd-cli"]

    # Redelivery after completion does not restart supervision.
    await broker.deliver(COMMANDS, foreign)
    assert monitor.get_command_status("cmd-cli") is None

    await monitor.stop()
    assert (COMMANDS, "monitor") in broker.unsubscriptions


@pytest.mark.asyncio
async def test_own_submissions_are_not_adopted_twice(broker):
    monitor = make_monitor(broker, commands_topic=COMMANDS)
    await monitor.start()

    command_id = monitor.submit(make_command(), timeout=5.0)
    for document in broker.messages(COMMANDS):
        await broker.deliver(COMMANDS, document)

    assert monitor.get_command_stats()["total"] == 1
    assert monitor.get_command_status(command_id) is not None

    await monitor.stop()


@pytest.mark.asyncio
async def test_ledger_is_compacted_while_running(broker, tmp_path):
    ledger_path = tmp_path / "ledger.jsonl"
    monitor = make_monitor(broker, ledger=CommandLedger(ledger_path, compact_after=5))
    await monitor.start()

    monitor.register_command(make_command("cmd-open"))
    for index in range(12):
        command_id = f"cmd-{index}"
        monitor.register_command(make_command(command_id))
        monitor.on_result(success(command_id))

    lines = [json.loads(line) for line in ledger_path.read_text().splitlines()]
    assert len(lines) < 12
    assert "cmd-open" in [line["commandId"] for line in lines]

    await monitor.stop()


@pytest.mark.asyncio
async def test_resumed_command_keeps_disabled_deadline(broker, tmp_path):
    ledger_path = tmp_path / "ledger.jsonl"
    first = make_monitor(broker, ledger=CommandLedger(ledger_path), default_timeout=0.05)
    await first.start()
    first.register_command(make_command("cmd-no-deadline"), timeout=0)
    await first.stop()

    second = make_monitor(
        broker, ledger=CommandLedger(ledger_path), default_timeout=0.05
    )
    await second.start()
    await asyncio.sleep(0.08)

    status = second.get_command_status("cmd-no-deadline")
    assert status is not None
    assert status.status is CommandState.PENDING
    assert broker.messages(COMMANDS) == []

    await second.stop()


@pytest.mark.asyncio
async def test_retry_notification_names_first_attempt(broker):
    monitor = make_monitor(broker, max_retries=1)
    await monitor.start()

    monitor.register_command(make_command("cmd-first"))
    monitor.on_result(failure("cmd-first"))
    await asyncio.sleep(0.01)

    (retry,) = monitor.get_active_commands()
    assert retry.origin_id == "cmd-first"
    monitor.on_result(success(retry.command_id))

    (notification,) = broker.messages(NOTIFICATIONS)
    assert notification["commandId"] == retry.command_id
    assert notification["originCommandId"] == "cmd-first"

    await monitor.stop()
