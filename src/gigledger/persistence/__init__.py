"""Persistence — the append-only marketplace event log."""

from gigledger.persistence.event_log import EventKind, EventLog, EventRecord

__all__ = ["EventKind", "EventLog", "EventRecord"]
