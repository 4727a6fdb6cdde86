"""Audit persistence — append-only event log."""

from jobescrow.persistence.event_log import EventKind, EventLog, EventRecord

__all__ = ["EventKind", "EventLog", "EventRecord"]
