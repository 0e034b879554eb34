"""Append-only ledger of monitored command attempts.

The monitor's registry lives in memory. When a ledger path is configured the
monitor also appends every dispatch, retry hand-off and terminal outcome to a
JSON-lines file, so that a restarted monitor can pick up the attempts that
were still outstanding instead of losing them silently.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .core.models import Command, CommandStatus, now_ms
from .core.wire import MessageDecodeError, command_from_dict

LOGGER = logging.getLogger(__name__)

EVENT_DISPATCHED = "dispatched"
EVENT_RETRIED = "retried"
EVENT_TERMINAL = "terminal"


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """An attempt that was dispatched but never closed."""

    command: Command
    retry_count: int
    max_retries: int
    timeout_seconds: float
    origin_id: Optional[str] = None


class CommandLedger:
    """JSON-lines event log of command attempts."""

    def __init__(self, path: Path, *, compact_after: int = 1000) -> None:
        self._path = path
        self._compact_after = max(1, compact_after)
        self._closed_since_compaction = 0

    @property
    def path(self) -> Path:
        return self._path

    def record_dispatched(self, status: CommandStatus, timeout_seconds: float) -> None:
        self._append(
            {
                "event": EVENT_DISPATCHED,
                "commandId": status.command_id,
                "command": status.command.as_dict(),
                "retryCount": status.retry_count,
                "maxRetries": status.max_retries,
                "timeoutSeconds": timeout_seconds,
                "originCommandId": status.origin_id,
            }
        )

    def record_retried(self, command_id: str) -> None:
        self._append({"event": EVENT_RETRIED, "commandId": command_id})
        self._closed()

    def record_terminal(self, status: CommandStatus) -> None:
        self._append(
            {
                "event": EVENT_TERMINAL,
                "commandId": status.command_id,
                "status": status.status.value,
                "retryCount": status.retry_count,
                "error": status.error,
            }
        )
        self._closed()

    def outstanding(self) -> List[LedgerEntry]:
        """Replay the log and return attempts with no closing event."""

        if not self._path.exists():
            return []

        open_entries: Dict[str, LedgerEntry] = {}
        with self._path.open("r", encoding="utf-8") as stream:
            for line_number, line in enumerate(stream, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    record = json.loads(line)
                    event = record["event"]
                    command_id = str(record["commandId"])
                except (json.JSONDecodeError, KeyError, TypeError) as exc:
                    LOGGER.warning(
                        "Skipping malformed ledger line %d in %s: %s",
                        line_number,
                        self._path,
                        exc,
                    )
                    continue

                if event == EVENT_DISPATCHED:
                    entry = _entry_from_record(record)
                    if entry is not None:
                        open_entries[command_id] = entry
                elif event in (EVENT_RETRIED, EVENT_TERMINAL):
                    open_entries.pop(command_id, None)

        return list(open_entries.values())

    def compact(self, entries: List[LedgerEntry]) -> None:
        """Rewrite the ledger so it only holds ``entries``."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with temp_path.open("w", encoding="utf-8") as stream:
            for entry in entries:
                stream.write(
                    json.dumps(
                        {
                            "event": EVENT_DISPATCHED,
                            "commandId": entry.command.command_id,
                            "command": entry.command.as_dict(),
                            "retryCount": entry.retry_count,
                            "maxRetries": entry.max_retries,
                            "timeoutSeconds": entry.timeout_seconds,
                            "originCommandId": entry.origin_id,
                            "recordedAt": now_ms(),
                        }
                    )
                )
                stream.write("\n")
        temp_path.replace(self._path)
        self._closed_since_compaction = 0

    def _closed(self) -> None:
        self._closed_since_compaction += 1
        if self._closed_since_compaction >= self._compact_after:
            entries = self.outstanding()
            self.compact(entries)
            LOGGER.debug(
                "Compacted ledger %s to %d outstanding entries", self._path, len(entries)
            )

    def _append(self, record: Dict[str, Any]) -> None:
        record["recordedAt"] = now_ms()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as stream:
            stream.write(json.dumps(record))
            stream.write("\n")


def _entry_from_record(record: Dict[str, Any]) -> LedgerEntry | None:
    try:
        command = command_from_dict(record["command"])
        return LedgerEntry(
            command=command,
            retry_count=int(record.get("retryCount", 0)),
            max_retries=int(record.get("maxRetries", 0)),
            timeout_seconds=float(record.get("timeoutSeconds", 0.0)),
            origin_id=record.get("originCommandId") or None,
        )
    except (MessageDecodeError, KeyError, TypeError, ValueError) as exc:
        LOGGER.warning(
            "Skipping unreadable ledger entry %s: %s", record.get("commandId"), exc
        )
        return None
