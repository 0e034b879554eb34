"""Command monitor: tracks dispatched commands until a terminal outcome.

The monitor consumes command results under its own consumer group and keeps
an in-memory registry with one record per outstanding dispatch attempt.
Each record carries a deadline timer. Failures and missed deadlines are
retried after a fixed delay, as fresh commands with new ids, until
``max_retries`` is exhausted. Every logical command ends with exactly one
``command_completed`` notification.

All registry mutation happens on the event loop thread: broker callbacks are
bridged into the loop by the adapter and timers are loop timers, so no lock
is needed.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .core.models import (
    Command,
    CommandCompleted,
    CommandResult,
    CommandState,
    CommandStatus,
    ErrorCode,
    now_ms,
)
from .core.outcomes import RecentOutcomes
from .core.protocols import BrokerClient
from .core.wire import (
    MessageDecodeError,
    decode_command,
    decode_result,
    encode_message,
)
from .ledger import CommandLedger
from .producer import CommandProducer, DispatchError

LOGGER = logging.getLogger(__name__)

DEADLINE_EXCEEDED = "deadline exceeded"

CompletionListener = Callable[[CommandCompleted], None]


@dataclass(slots=True)
class _TrackedCommand:
    status: CommandStatus
    timeout: float
    timer: Optional[asyncio.TimerHandle] = None
    retry_task: Optional[asyncio.Task[None]] = None


class CommandMonitor:
    """Supervises outstanding commands, retries them and reports outcomes."""

    def __init__(
        self,
        broker: BrokerClient,
        producer: CommandProducer,
        *,
        results_topic: str,
        notifications_topic: str,
        commands_topic: Optional[str] = None,
        group: Optional[str] = None,
        default_timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 5.0,
        ledger: Optional[CommandLedger] = None,
        outcomes: Optional[RecentOutcomes] = None,
    ) -> None:
        self._broker = broker
        self._producer = producer
        self._results_topic = results_topic
        self._notifications_topic = notifications_topic
        self._commands_topic = commands_topic
        self._group = group
        self._default_timeout = default_timeout
        self._max_retries = max(0, max_retries)
        self._retry_delay = max(0.0, retry_delay)
        self._ledger = ledger
        self._outcomes = outcomes or RecentOutcomes()

        self._registry: Dict[str, _TrackedCommand] = {}
        self._listeners: List[CompletionListener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._handler_registered = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        if self._handler_registered:
            raise RuntimeError("CommandMonitor already started")

        self._loop = asyncio.get_running_loop()
        self._broker.subscribe(
            self._results_topic, self._handle_message, group=self._group, qos=1
        )
        self._handler_registered = True
        LOGGER.info(
            "Command monitor consuming %s (group=%s)", self._results_topic, self._group
        )

        self._reconcile_ledger()

        if self._commands_topic is not None:
            self._broker.subscribe(
                self._commands_topic,
                self._handle_command_message,
                group=self._group,
                qos=1,
            )
            LOGGER.info(
                "Command monitor adopting commands from %s", self._commands_topic
            )

    async def stop(self) -> None:
        """Abandon every outstanding command without notifying."""

        if self._handler_registered:
            topics = [self._results_topic]
            if self._commands_topic is not None:
                topics.append(self._commands_topic)
            for topic in topics:
                try:
                    self._broker.unsubscribe(topic, group=self._group)
                except Exception as exc:  # pragma: no cover - best-effort cleanup
                    LOGGER.warning("Failed to unsubscribe from %s: %s", topic, exc)
            self._handler_registered = False

        retry_tasks: List[asyncio.Task[None]] = []
        for tracked in self._registry.values():
            self._cancel_timer(tracked)
            if tracked.retry_task is not None:
                tracked.retry_task.cancel()
                retry_tasks.append(tracked.retry_task)

        abandoned = len(self._registry)
        self._registry.clear()

        for task in retry_tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if abandoned:
            LOGGER.info("Command monitor stopped; abandoned %d commands", abandoned)

    def add_completion_listener(self, listener: CompletionListener) -> None:
        """Call ``listener`` with every terminal notification, after it is published."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register_command(
        self,
        command: Command,
        *,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        max_retries: Optional[int] = None,
    ) -> bool:
        """Start tracking ``command`` and arm its deadline timer.

        Registration is create-only: an id that is already tracked is left
        untouched and ``False`` is returned.
        """
        return self._track(
            command,
            timeout=self._default_timeout if timeout is None else timeout,
            retry_count=retry_count,
            max_retries=self._max_retries if max_retries is None else max_retries,
            record=True,
        )

    def submit(self, command: Command, *, timeout: Optional[float] = None) -> str:
        """Dispatch ``command`` through the producer and track it.

        Raises :class:`DispatchError` when the broker refuses the command, in
        which case nothing is registered.
        """
        sent = self._producer.publish(command)
        self.register_command(sent, timeout=timeout)
        return sent.command_id  # type: ignore[return-value]

    def _track(
        self,
        command: Command,
        *,
        timeout: float,
        retry_count: int,
        max_retries: int,
        record: bool,
        origin_id: Optional[str] = None,
    ) -> bool:
        status = CommandStatus.for_command(
            command,
            retry_count=retry_count,
            max_retries=max(0, max_retries),
            origin_id=origin_id,
        )
        if status.command_id in self._registry:
            LOGGER.debug("Command %s already registered; ignoring", status.command_id)
            return False

        tracked = _TrackedCommand(status=status, timeout=timeout)
        self._registry[status.command_id] = tracked
        if timeout > 0:
            tracked.timer = self._event_loop().call_later(
                timeout, self.on_timeout, status.command_id
            )

        if record and self._ledger is not None:
            self._write_ledger(self._ledger.record_dispatched, status, timeout)

        LOGGER.info(
            "Monitoring %s command %s for device %s (attempt %d/%d, timeout %.1fs)",
            status.type.value,
            status.command_id,
            status.device_id,
            status.retry_count + 1,
            status.max_retries + 1,
            timeout,
        )
        return True

    async def _handle_command_message(self, topic: str, payload: bytes) -> None:
        """Register commands published by producers outside this process."""
        try:
            command = decode_command(payload)
        except MessageDecodeError as exc:
            LOGGER.debug("Not adopting undecodable command on %s: %s", topic, exc)
            return

        command_id = command.command_id or ""
        if command_id in self._registry or self._outcomes.lookup(command_id) is not None:
            return
        if self.register_command(command):
            LOGGER.info("Adopted command %s published elsewhere", command_id)

    # ------------------------------------------------------------------
    # Result and deadline handling
    # ------------------------------------------------------------------
    async def _handle_message(self, topic: str, payload: bytes) -> None:
        try:
            result = decode_result(payload)
        except MessageDecodeError as exc:
            LOGGER.warning("Ignoring undecodable result on %s: %s", topic, exc)
            return
        self.on_result(result)

    def on_result(self, result: CommandResult) -> None:
        tracked = self._registry.get(result.command_id)
        if tracked is None:
            self._log_orphan(result)
            return

        status = tracked.status

        if tracked.retry_task is not None:
            # A late result for an attempt that is already being retried.
            if result.success:
                LOGGER.info(
                    "Command %s succeeded while awaiting retry; cancelling retry",
                    status.command_id,
                )
                tracked.retry_task.cancel()
                tracked.retry_task = None
                self._finish(tracked, CommandState.COMPLETED, result=result.result)
            else:
                LOGGER.debug(
                    "Ignoring failure for %s; retry already scheduled",
                    status.command_id,
                )
            return

        self._cancel_timer(tracked)

        if result.success:
            self._finish(tracked, CommandState.COMPLETED, result=result.result)
            return

        error = result.error or "command failed"
        if result.retryable and status.retries_left:
            self._schedule_retry(tracked, error=error, error_code=result.error_code)
            return

        self._finish(
            tracked,
            CommandState.FAILED,
            result=result.result,
            error=error,
            error_code=result.error_code,
        )

    def on_timeout(self, command_id: str) -> None:
        tracked = self._registry.get(command_id)
        if tracked is None or tracked.retry_task is not None:
            return
        if tracked.status.status.is_terminal:
            return

        tracked.timer = None
        status = tracked.status
        LOGGER.warning(
            "Command %s for device %s exceeded its %.1fs deadline",
            command_id,
            status.device_id,
            tracked.timeout,
        )

        if status.retries_left:
            self._schedule_retry(
                tracked,
                error=DEADLINE_EXCEEDED,
                error_code=ErrorCode.DEADLINE_EXCEEDED.value,
            )
            return

        self._finish(
            tracked,
            CommandState.TIMEOUT,
            error=DEADLINE_EXCEEDED,
            error_code=ErrorCode.DEADLINE_EXCEEDED.value,
        )

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    def _schedule_retry(
        self, tracked: _TrackedCommand, *, error: str, error_code: Optional[str]
    ) -> None:
        status = tracked.status
        status.error = error
        status.error_code = error_code
        LOGGER.info(
            "Retrying command %s in %.1fs (attempt %d/%d): %s",
            status.command_id,
            self._retry_delay,
            status.retry_count + 2,
            status.max_retries + 1,
            error,
        )
        task = self._event_loop().create_task(self._retry(tracked))
        tracked.retry_task = task
        task.add_done_callback(self._retry_done)

    async def _retry(self, tracked: _TrackedCommand) -> None:
        if self._retry_delay > 0:
            await asyncio.sleep(self._retry_delay)

        status = tracked.status
        if self._registry.get(status.command_id) is not tracked:
            return

        replacement = dataclasses.replace(
            status.command, command_id=None, timestamp=now_ms()
        )
        try:
            sent = self._producer.publish(replacement)
        except DispatchError as exc:
            tracked.retry_task = None
            self._finish(
                tracked,
                CommandState.FAILED,
                error=f"retry dispatch failed: {exc}",
                error_code=ErrorCode.DISPATCH_FAILED.value,
            )
            return

        # Swap the attempts without yielding so no result can slip in between.
        tracked.retry_task = None
        del self._registry[status.command_id]
        self._outcomes.remember(
            status.command_id,
            status.status,
            error=status.error,
            successor_id=sent.command_id,
        )
        if self._ledger is not None:
            self._write_ledger(self._ledger.record_retried, status.command_id)

        self._track(
            sent,
            timeout=tracked.timeout,
            retry_count=status.retry_count + 1,
            max_retries=status.max_retries,
            record=True,
            origin_id=status.origin_id,
        )

    def _retry_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error(
                "Command retry raised an exception",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------
    def _finish(
        self,
        tracked: _TrackedCommand,
        state: CommandState,
        *,
        result: Any = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        self._cancel_timer(tracked)
        status = tracked.status
        status.status = state
        status.completed_at = datetime.now(timezone.utc)
        status.result = result
        if state is CommandState.COMPLETED:
            status.error = None
            status.error_code = None
        else:
            status.error = error
            status.error_code = error_code

        self._registry.pop(status.command_id, None)
        self._outcomes.remember(status.command_id, state, error=status.error)
        if self._ledger is not None:
            self._write_ledger(self._ledger.record_terminal, status)

        if state is CommandState.COMPLETED:
            LOGGER.info(
                "Command %s completed on device %s", status.command_id, status.device_id
            )
        else:
            LOGGER.warning(
                "Command %s for device %s ended as %s after %d retries: %s",
                status.command_id,
                status.device_id,
                state.value,
                status.retry_count,
                status.error,
            )

        self._notify(status)

    def _notify(self, status: CommandStatus) -> None:
        notification = CommandCompleted.from_status(status)
        try:
            self._broker.publish(
                self._notifications_topic,
                encode_message(notification.as_dict()),
                qos=1,
            )
        except Exception:
            LOGGER.exception(
                "Failed to publish completion notification for %s", status.command_id
            )

        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                LOGGER.exception("Completion listener raised an exception")

    def _log_orphan(self, result: CommandResult) -> None:
        closed = self._outcomes.lookup(result.command_id)
        if closed is None:
            LOGGER.info(
                "Discarding result for unknown command %s (success=%s)",
                result.command_id,
                result.success,
            )
        elif closed.successor_id:
            LOGGER.info(
                "Discarding late result for %s; superseded by retry %s",
                result.command_id,
                closed.successor_id,
            )
        else:
            LOGGER.info(
                "Discarding duplicate result for %s; already %s",
                result.command_id,
                closed.status.value,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_command_status(self, command_id: str) -> Optional[CommandStatus]:
        tracked = self._registry.get(command_id)
        if tracked is None:
            return None
        return dataclasses.replace(tracked.status)

    def get_active_commands(self) -> List[CommandStatus]:
        return [dataclasses.replace(tracked.status) for tracked in self._registry.values()]

    def get_command_stats(self) -> Dict[str, int]:
        stats = {state.value: 0 for state in CommandState}
        for tracked in self._registry.values():
            stats[tracked.status.status.value] += 1
        stats["total"] = len(self._registry)
        return stats

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _event_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @staticmethod
    def _cancel_timer(tracked: _TrackedCommand) -> None:
        if tracked.timer is not None:
            tracked.timer.cancel()
            tracked.timer = None

    def _write_ledger(self, method: Callable[..., None], *args: Any) -> None:
        try:
            method(*args)
        except OSError:
            LOGGER.exception("Failed to write command ledger entry")

    def _reconcile_ledger(self) -> None:
        ledger = self._ledger
        if ledger is None:
            return

        try:
            entries = ledger.outstanding()
            ledger.compact(entries)
        except OSError:
            LOGGER.exception("Failed to replay command ledger %s", ledger.path)
            return

        for entry in entries:
            self._track(
                entry.command,
                timeout=entry.timeout_seconds,
                retry_count=entry.retry_count,
                max_retries=entry.max_retries,
                record=False,
                origin_id=entry.origin_id,
            )

        if entries:
            LOGGER.info(
                "Resumed monitoring %d outstanding commands from %s",
                len(entries),
                ledger.path,
            )
