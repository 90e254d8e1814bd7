#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
dbreplica Core Package Initialization
Exports the main components for clean imports
"""

from .errors import (
    ErrorCode,
    ReplicaError,
    ConnectionError,
    IntrospectionError,
    TypeMappingError,
    ReplicationError,
    UnknownAdapterError,
)
from .type_codec import PortableType, TypeKind, normalize, render_declaration, render_literal
from .schema_ir import (
    Column, DatabaseSnapshot, EnumType, ForeignKeyRef, Index, Sequence, Table, View
)
from .events import SyncEvent, SyncObserver, SyncPhase, LoggingObserver, RecordingObserver
from .statement_compiler import PlanPhase, PlanStep, build_plan
from .database_manager import AdapterRegistry, DatabaseAdapter, registry
from .replicator import ReplicationState, Replicator, SyncResult

__all__ = [
    # Errors
    'ErrorCode',
    'ReplicaError',
    'ConnectionError',
    'IntrospectionError',
    'TypeMappingError',
    'ReplicationError',
    'UnknownAdapterError',

    # Types and snapshot model
    'PortableType',
    'TypeKind',
    'normalize',
    'render_declaration',
    'render_literal',
    'Column',
    'DatabaseSnapshot',
    'EnumType',
    'ForeignKeyRef',
    'Index',
    'Sequence',
    'Table',
    'View',

    # Events
    'SyncEvent',
    'SyncObserver',
    'SyncPhase',
    'LoggingObserver',
    'RecordingObserver',

    # Pipeline
    'PlanPhase',
    'PlanStep',
    'build_plan',
    'AdapterRegistry',
    'DatabaseAdapter',
    'registry',
    'ReplicationState',
    'Replicator',
    'SyncResult',
]

__version__ = '0.1.0'
