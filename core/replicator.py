#!/usr/bin/env python3
"""
dbreplica Replicator
====================

Drives one sync run from a source adapter to a destination adapter:

    IDLE -> SOURCE_CONNECTED -> SNAPSHOT_CAPTURED -> DESTINATION_CONNECTED
         -> APPLYING -> COMMITTED | ROLLED_BACK

Failures before APPLYING (connecting, introspecting) end in FAILED. Both
connections are closed on every exit path. A finished replicator can be run
again; the next run restarts from IDLE.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.database_manager import DatabaseAdapter
from core.errors import ReplicaError, ReplicationError
from core.events import SyncObserver, SyncPhase, emit
from core.schema_ir import DatabaseSnapshot

logger = logging.getLogger(__name__)


class ReplicationState(Enum):
    IDLE = "idle"
    SOURCE_CONNECTED = "source_connected"
    SNAPSHOT_CAPTURED = "snapshot_captured"
    DESTINATION_CONNECTED = "destination_connected"
    APPLYING = "applying"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TRANSITIONS = {
    ReplicationState.IDLE: {ReplicationState.SOURCE_CONNECTED, ReplicationState.FAILED},
    ReplicationState.SOURCE_CONNECTED: {ReplicationState.SNAPSHOT_CAPTURED, ReplicationState.FAILED},
    ReplicationState.SNAPSHOT_CAPTURED: {ReplicationState.DESTINATION_CONNECTED, ReplicationState.FAILED},
    ReplicationState.DESTINATION_CONNECTED: {ReplicationState.APPLYING, ReplicationState.FAILED},
    ReplicationState.APPLYING: {ReplicationState.COMMITTED, ReplicationState.ROLLED_BACK},
    ReplicationState.COMMITTED: {ReplicationState.IDLE},
    ReplicationState.ROLLED_BACK: {ReplicationState.IDLE},
    ReplicationState.FAILED: {ReplicationState.IDLE},
}

TERMINAL_STATES = {ReplicationState.COMMITTED, ReplicationState.ROLLED_BACK, ReplicationState.FAILED}


@dataclass
class SyncResult:
    """Outcome of a committed sync run"""
    state: ReplicationState
    source: str
    destination: str
    table_name: Optional[str] = None
    tables: int = 0
    rows: int = 0
    enums: int = 0
    sequences: int = 0
    indexes: int = 0
    views: int = 0
    elapsed: float = 0.0
    dump_path: Optional[Path] = None
    states: List[ReplicationState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == ReplicationState.COMMITTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'source': self.source,
            'destination': self.destination,
            'table_name': self.table_name,
            'tables': self.tables,
            'rows': self.rows,
            'enums': self.enums,
            'sequences': self.sequences,
            'indexes': self.indexes,
            'views': self.views,
            'elapsed': round(self.elapsed, 3),
            'dump_path': str(self.dump_path) if self.dump_path else None,
            'states': [s.value for s in self.states],
        }


def dump_snapshot(snapshot: DatabaseSnapshot, dump_dir: Path) -> Path:
    """Write a snapshot as JSON for debugging; returns the file path"""
    dump_dir = Path(dump_dir)
    dump_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
    path = dump_dir / f"{snapshot.name or 'snapshot'}_{stamp}.json"
    with open(path, 'w', encoding='utf-8') as f:
        f.write(snapshot.to_json())
    return path


class Replicator:
    """Copies the source database (or one table of it) into the destination"""

    def __init__(self, source: DatabaseAdapter, destination: DatabaseAdapter,
                 observer: Optional[SyncObserver] = None, dump_dir: Optional[Path] = None):
        self.source = source
        self.destination = destination
        self.observer = observer
        self.dump_dir = Path(dump_dir) if dump_dir else None

        self.state = ReplicationState.IDLE
        self.history: List[ReplicationState] = [ReplicationState.IDLE]
        self.snapshot: Optional[DatabaseSnapshot] = None
        self.last_error: Optional[Exception] = None
        self.dump_path: Optional[Path] = None

    def _transition(self, new_state: ReplicationState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid replication state transition: "
                               f"{self.state.value} -> {new_state.value}")
        logger.debug(f"Replication state {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def _fail(self, error: Exception, phase: SyncPhase, state: ReplicationState):
        if isinstance(error, ReplicaError):
            if not error.details.get('phase'):
                error.details['phase'] = phase.value
        self.last_error = error
        self._transition(state)
        emit(self.observer, phase, str(error), level=logging.ERROR)

    def run(self, table_name: Optional[str] = None) -> SyncResult:
        """
        Run one sync.

        Args:
            table_name: Replicate only this table (plus the enums and
                sequences it uses, and its indexes)

        Raises:
            ConnectionError: either endpoint could not be opened
            IntrospectionError: the source could not be captured
            ReplicationError: the destination rejected the plan (rolled back)
        """
        if self.state in TERMINAL_STATES:
            self._transition(ReplicationState.IDLE)
            self.history = [ReplicationState.IDLE]
        elif self.state != ReplicationState.IDLE:
            raise RuntimeError(f"Replicator is busy ({self.state.value})")

        start_time = time.time()
        self.snapshot = None
        self.last_error = None
        self.dump_path = None

        failed = True
        try:
            snapshot = self._capture(table_name)
            self._apply(snapshot)
            failed = False
        finally:
            self._disconnect_all(raise_errors=not failed)

        return SyncResult(
            state=self.state,
            source=self.source.safe_uri,
            destination=self.destination.safe_uri,
            table_name=table_name,
            tables=len(snapshot.tables),
            rows=snapshot.row_count,
            enums=len(snapshot.enums),
            sequences=len(snapshot.sequences),
            indexes=len(snapshot.indexes),
            views=len(snapshot.views),
            elapsed=time.time() - start_time,
            dump_path=self.dump_path,
            states=list(self.history),
        )

    def _capture(self, table_name: Optional[str]) -> DatabaseSnapshot:
        emit(self.observer, SyncPhase.CONNECT_SOURCE, "connecting", entity=self.source.safe_uri)
        try:
            self.source.connect()
        except Exception as e:
            self._fail(e, SyncPhase.CONNECT_SOURCE, ReplicationState.FAILED)
            raise
        self._transition(ReplicationState.SOURCE_CONNECTED)

        try:
            snapshot = self.source.get_data(table_name)
        except Exception as e:
            self._fail(e, SyncPhase.INTROSPECT, ReplicationState.FAILED)
            raise
        self.snapshot = snapshot
        self._transition(ReplicationState.SNAPSHOT_CAPTURED)

        if self.dump_dir:
            try:
                self.dump_path = dump_snapshot(snapshot, self.dump_dir)
                logger.info(f"Snapshot written to {self.dump_path}")
            except (OSError, ReplicaError) as e:
                logger.warning(f"Could not write snapshot dump: {e}")

        return snapshot

    def _apply(self, snapshot: DatabaseSnapshot):
        emit(self.observer, SyncPhase.CONNECT_DESTINATION, "connecting",
             entity=self.destination.safe_uri)
        try:
            self.destination.connect()
        except Exception as e:
            self._fail(e, SyncPhase.CONNECT_DESTINATION, ReplicationState.FAILED)
            raise
        self._transition(ReplicationState.DESTINATION_CONNECTED)

        self._transition(ReplicationState.APPLYING)
        try:
            self.destination.insert_data(snapshot)
        except ReplicaError as e:
            self._fail(e, SyncPhase.ROLLBACK, ReplicationState.ROLLED_BACK)
            raise
        except Exception as e:
            error = ReplicationError(f"Apply failed: {e}", phase=SyncPhase.ROLLBACK.value)
            self._fail(error, SyncPhase.ROLLBACK, ReplicationState.ROLLED_BACK)
            raise error from e

        self._transition(ReplicationState.COMMITTED)
        emit(self.observer, SyncPhase.COMMIT,
             f"{len(snapshot.tables)} tables, {snapshot.row_count} rows",
             entity=self.destination.safe_uri, count=snapshot.row_count)

    def _disconnect_all(self, raise_errors: bool):
        """Close both endpoints; close failures only surface when nothing else failed"""
        first_error = None
        for adapter in (self.source, self.destination):
            try:
                adapter.disconnect()
                emit(self.observer, SyncPhase.DISCONNECT, "closed", entity=adapter.safe_uri)
            except Exception as e:
                logger.error(f"Failed to close {adapter.safe_uri}: {e}")
                if first_error is None:
                    first_error = e

        if raise_errors and first_error is not None:
            if isinstance(first_error, ReplicaError):
                if not first_error.details.get('phase'):
                    first_error.details['phase'] = SyncPhase.DISCONNECT.value
            raise first_error
