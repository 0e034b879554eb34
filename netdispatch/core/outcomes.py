"""Short-lived memory of attempts that left the monitor registry.

Once an attempt reaches a terminal state, or is replaced by a retry, it
leaves the monitor's live registry. Under at-least-once delivery, duplicate
or late results for it can still arrive. This cache lets the monitor tell
those apart from results for ids it never tracked, purely for diagnostics:
it never changes state.

Key features:
- TTL-based expiration
- Bounded size with periodic cleanup
- Single-threaded use from the asyncio event loop
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from .models import CommandState

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ClosedAttempt:
    """Record of an attempt that left the live registry."""

    command_id: str
    status: CommandState
    recorded_at: datetime
    error: Optional[str] = None
    successor_id: Optional[str] = None


class RecentOutcomes:
    """Remembers closed attempt ids for a bounded period of time."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 10000,
        cleanup_interval: int = 100,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Args:
            ttl_seconds: Time-to-live for remembered outcomes.
            max_entries: Maximum entries before forced cleanup (memory safety).
            cleanup_interval: Run cleanup every N operations.
            clock: Source of the current time, injectable for tests.
        """
        self._outcomes: Dict[str, ClosedAttempt] = {}
        self._ttl = timedelta(seconds=ttl_seconds)
        self._max_entries = max_entries
        self._cleanup_interval = max(1, cleanup_interval)
        self._operation_count = 0
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def remember(
        self,
        command_id: str,
        status: CommandState,
        *,
        error: Optional[str] = None,
        successor_id: Optional[str] = None,
    ) -> None:
        """Remember a closed attempt; ``successor_id`` names the retry that replaced it."""
        self._maybe_cleanup()
        self._outcomes[command_id] = ClosedAttempt(
            command_id=command_id,
            status=status,
            recorded_at=self._clock(),
            error=error,
            successor_id=successor_id,
        )

    def lookup(self, command_id: str) -> Optional[ClosedAttempt]:
        """Return the remembered outcome, or None if unknown or expired."""
        entry = self._outcomes.get(command_id)
        if entry is None:
            return None
        if self._is_expired(entry):
            del self._outcomes[command_id]
            return None
        return entry

    def clear(self) -> None:
        self._outcomes.clear()
        self._operation_count = 0

    @property
    def entry_count(self) -> int:
        return len(self._outcomes)

    def _is_expired(self, entry: ClosedAttempt) -> bool:
        return entry.recorded_at < self._clock() - self._ttl

    def _maybe_cleanup(self) -> None:
        self._operation_count += 1

        if (
            self._operation_count % self._cleanup_interval != 0
            and len(self._outcomes) < self._max_entries
        ):
            return

        self._cleanup_expired()

    def _cleanup_expired(self) -> None:
        cutoff = self._clock() - self._ttl
        expired_keys = [
            key for key, value in self._outcomes.items() if value.recorded_at < cutoff
        ]
        for key in expired_keys:
            del self._outcomes[key]

        if expired_keys:
            LOGGER.debug("Forgot %d expired command outcomes", len(expired_keys))

        # Still over the limit after TTL cleanup: drop the oldest half.
        if len(self._outcomes) >= self._max_entries:
            sorted_entries = sorted(
                self._outcomes.items(), key=lambda item: item[1].recorded_at
            )
            remove_count = len(sorted_entries) // 2
            for key, _ in sorted_entries[:remove_count]:
                del self._outcomes[key]
            LOGGER.warning(
                "Forced cleanup of %d oldest command outcomes (max_entries=%d reached)",
                remove_count,
                self._max_entries,
            )
