#!/usr/bin/env python3
"""
dbreplica Error Hierarchy
Canonical exception classes for the replication pipeline.

Note: ConnectionError shadows the builtin of the same name inside modules
that import it by name.
"""

from enum import Enum

class ErrorCode(Enum):
    UNKNOWN = "UNKNOWN_ERROR"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    INTROSPECTION_ERROR = "INTROSPECTION_ERROR"
    TYPE_MAPPING_ERROR = "TYPE_MAPPING_ERROR"
    REPLICATION_ERROR = "REPLICATION_ERROR"
    UNKNOWN_ADAPTER = "UNKNOWN_ADAPTER"

class ReplicaError(Exception):
    """Base class for all dbreplica exceptions"""
    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN, details: dict = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    @property
    def phase(self):
        return self.details.get('phase')

class ConnectionError(ReplicaError):
    """Raised when opening or closing an endpoint fails"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.CONNECTION_ERROR, details)

class IntrospectionError(ReplicaError):
    """Raised when a catalog query or catalog parse fails"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.INTROSPECTION_ERROR, details)

class TypeMappingError(ReplicaError):
    """Raised when a column type or value has no portable encoding"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.TYPE_MAPPING_ERROR, details)

class ReplicationError(ReplicaError):
    """Raised when a destination statement fails while applying"""
    def __init__(self, message: str, phase: str = None, entity: str = None, details: dict = None):
        details = dict(details or {})
        details.setdefault('phase', phase)
        details.setdefault('entity', entity)
        super().__init__(message, ErrorCode.REPLICATION_ERROR, details)

    @property
    def entity(self):
        return self.details.get('entity')

class UnknownAdapterError(ReplicaError):
    """Raised when no adapter is registered for a URI scheme"""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, ErrorCode.UNKNOWN_ADAPTER, details)
