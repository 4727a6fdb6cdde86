"""Append-only event log — the audit trail of every committed job operation.

Every successful mutation of a job produces an event record appended to
the log. Records are hash-chained: each one commits to the hash of the
record before it, so editing, dropping or reordering a line breaks the
chain and is caught when the log is loaded. The log is an audit trail,
not a job index: it records what happened, in order, and lets a third
party verify that nothing was rewritten afterwards.

On-disk form is JSONL, one record object per line:
    {"event_id", "event_kind", "timestamp_utc", "actor_id",
     "payload", "prev_hash", "event_hash"}
"""

from __future__ import annotations

import enum
import hashlib
import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# prev_hash of the first record in a log
ZERO_HASH = "sha256:" + "0" * 64

_FIELDS = (
    "event_id",
    "event_kind",
    "timestamp_utc",
    "actor_id",
    "payload",
    "prev_hash",
    "event_hash",
)


class EventKind(str, enum.Enum):
    """Classification of job escrow events."""
    JOB_CREATED = "job_created"
    DEPOSIT_ACCEPTED = "deposit_accepted"
    PAYMENT_RECEIVED = "payment_received"
    WORK_SUBMITTED = "work_submitted"
    CHANGE_REQUESTED = "change_requested"
    JOB_FINISHED = "job_finished"
    JOB_CANCELED = "job_canceled"


def _chain_hash(body: dict[str, Any]) -> str:
    canonical = json.dumps(body, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class EventRecord:
    """A single immutable event in the audit log.

    event_hash covers every other field, prev_hash included.
    """
    event_id: str
    event_kind: EventKind
    timestamp_utc: str
    actor_id: str
    payload: dict[str, Any]
    prev_hash: str
    event_hash: str

    @staticmethod
    def create(
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        prev_hash: str = ZERO_HASH,
        timestamp_utc: Optional[datetime] = None,
    ) -> EventRecord:
        ts = timestamp_utc or datetime.now(timezone.utc)
        body = {
            "event_id": event_id,
            "event_kind": event_kind.value,
            "timestamp_utc": ts.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "actor_id": actor_id,
            "payload": payload,
            "prev_hash": prev_hash,
        }
        return EventRecord(
            event_id=event_id,
            event_kind=event_kind,
            timestamp_utc=body["timestamp_utc"],
            actor_id=actor_id,
            payload=payload,
            prev_hash=prev_hash,
            event_hash=_chain_hash(body),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_kind": self.event_kind.value,
            "timestamp_utc": self.timestamp_utc,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "prev_hash": self.prev_hash,
            "event_hash": self.event_hash,
        }

    @classmethod
    def from_dict(cls, data: Any) -> EventRecord:
        """Rebuild a stored record, verifying its shape and hash.

        Raises ValueError for anything that is not a well-formed,
        untampered record.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Event record must be a JSON object, got {type(data).__name__}")
        missing = [name for name in _FIELDS if name not in data]
        if missing:
            raise ValueError(f"Event record is missing fields: {', '.join(missing)}")
        if not isinstance(data["payload"], dict):
            raise ValueError("Event payload must be a JSON object")
        for name in _FIELDS:
            if name != "payload" and not isinstance(data[name], str):
                raise ValueError(f"Event field {name} must be a string")

        body = {name: data[name] for name in _FIELDS if name != "event_hash"}
        expected = _chain_hash(body)
        if data["event_hash"] != expected:
            raise ValueError(
                f"Integrity check failed: event {data['event_id']} "
                f"stored hash {data['event_hash']} != computed {expected}"
            )
        return cls(
            event_id=data["event_id"],
            event_kind=EventKind(data["event_kind"]),
            timestamp_utc=data["timestamp_utc"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            prev_hash=data["prev_hash"],
            event_hash=data["event_hash"],
        )


class EventLog:
    """Hash-chained, append-only event log with optional file persistence.

    Usage:
        log = EventLog(storage_path=Path("data/events.jsonl"))
        log.record("EVT-00000001", EventKind.JOB_CREATED, "carol", {"job_id": "J-1"})
        log.events_for_job("J-1")
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._storage_path = storage_path
        self._events: list[EventRecord] = []
        self._by_id: set[str] = set()
        self._by_job: dict[str, list[EventRecord]] = {}
        self._lock = threading.RLock()

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    @property
    def head_hash(self) -> str:
        """Hash the next record must chain onto."""
        with self._lock:
            return self._events[-1].event_hash if self._events else ZERO_HASH

    def record(
        self,
        event_id: str,
        event_kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
    ) -> EventRecord:
        """Create a record chained onto the current head and append it."""
        with self._lock:
            event = EventRecord.create(
                event_id, event_kind, actor_id, payload, prev_hash=self.head_hash,
            )
            self.append(event)
        return event

    def append(self, event: EventRecord) -> None:
        """Append a record that already chains onto the head.

        Raises ValueError on a duplicate event_id (replay protection) or
        a record that does not extend the current head. The file is
        written before memory, so a failed write leaves both unchanged.
        """
        with self._lock:
            if event.event_id in self._by_id:
                raise ValueError(f"Duplicate event ID: {event.event_id}")
            if event.prev_hash != self.head_hash:
                raise ValueError(
                    f"Event {event.event_id} does not extend the log head "
                    f"{self.head_hash}"
                )
            if self._storage_path:
                self._write_line(event)
            self._index(event)

    def events(self, kind: Optional[EventKind] = None) -> list[EventRecord]:
        with self._lock:
            if kind is None:
                return list(self._events)
            return [e for e in self._events if e.event_kind == kind]

    def events_for_job(self, job_id: str) -> list[EventRecord]:
        """Return the events recorded for a single job, oldest first."""
        with self._lock:
            return list(self._by_job.get(job_id, ()))

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[EventRecord]:
        with self._lock:
            return self._events[-1] if self._events else None

    def _index(self, event: EventRecord) -> None:
        self._events.append(event)
        self._by_id.add(event.event_id)
        job_id = event.payload.get("job_id")
        if isinstance(job_id, str):
            self._by_job.setdefault(job_id, []).append(event)

    def _write_line(self, event: EventRecord) -> None:
        self._storage_path.parent.mkdir(parents=True, exist_ok=True)
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load and verify a JSONL log.

        Fail-closed: rejects malformed lines, tampered records, broken
        chain links and duplicate event IDs.
        """
        with path.open("r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    event = EventRecord.from_dict(json.loads(line))
                except ValueError as e:
                    raise ValueError(f"Line {line_num}: {e}") from e

                if event.event_id in self._by_id:
                    raise ValueError(
                        f"Duplicate event ID on recovery (line {line_num}): {event.event_id}"
                    )
                if event.prev_hash != self.head_hash:
                    raise ValueError(
                        f"Chain broken (line {line_num}): event {event.event_id} "
                        f"follows {event.prev_hash}, expected {self.head_hash}"
                    )
                self._index(event)
