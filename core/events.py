#!/usr/bin/env python3
"""
dbreplica Sync Events
=====================

Structured progress events for a sync run. The replicator, introspector and
adapters report what they are doing (phase, entity, counts) to an injected
observer instead of writing to the console; how events are presented is the
observer's business.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class SyncPhase(Enum):
    """Phases a sync run moves through"""
    CONNECT_SOURCE = "connect_source"
    INTROSPECT = "introspect"
    FETCH_ROWS = "fetch_rows"
    CONNECT_DESTINATION = "connect_destination"
    DROP_TABLES = "drop_tables"
    CREATE_ENUMS = "create_enums"
    CREATE_SEQUENCES = "create_sequences"
    CREATE_TABLES = "create_tables"
    CREATE_INDEXES = "create_indexes"
    CREATE_VIEWS = "create_views"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    DISCONNECT = "disconnect"


@dataclass
class SyncEvent:
    """One progress event"""
    phase: SyncPhase
    message: str = ""
    entity: Optional[str] = None
    count: Optional[int] = None
    level: int = logging.INFO
    timestamp: float = field(default_factory=time.time)
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['phase'] = self.phase.value
        data['level'] = logging.getLevelName(self.level)
        return data


class SyncObserver:
    """Receives sync events. The base observer ignores them."""

    def notify(self, event: SyncEvent) -> None:
        pass


class LoggingObserver(SyncObserver):
    """Writes events to the standard logger"""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    def notify(self, event: SyncEvent) -> None:
        parts = [f"[{event.phase.value}]"]
        if event.entity:
            parts.append(event.entity)
        if event.message:
            parts.append(event.message)
        if event.count is not None:
            parts.append(f"({event.count})")
        self.log.log(event.level, " ".join(parts))


class RecordingObserver(SyncObserver):
    """Keeps events in memory (thread-safe)"""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[SyncEvent] = []

    def notify(self, event: SyncEvent) -> None:
        with self._lock:
            self.events.append(event)

    def phases(self) -> List[SyncPhase]:
        with self._lock:
            return [e.phase for e in self.events]

    def for_phase(self, phase: SyncPhase) -> List[SyncEvent]:
        with self._lock:
            return [e for e in self.events if e.phase == phase]


def emit(observer: Optional[SyncObserver], phase: SyncPhase, message: str = "",
         entity: Optional[str] = None, count: Optional[int] = None,
         level: int = logging.INFO, **fields) -> None:
    """Send an event; observer failures are logged and never interrupt a run."""
    if observer is None:
        return
    event = SyncEvent(phase=phase, message=message, entity=entity, count=count,
                      level=level, fields=fields)
    try:
        observer.notify(event)
    except Exception as e:
        logger.warning(f"Sync observer failed on {phase.value} event: {e}")
