#!/usr/bin/env python3
"""
dbreplica Type Codec
====================

Maps catalog-reported column types to portable type tags, and renders those
tags back into SQL:

- normalize(): catalog type name (+ length) -> PortableType
- render_declaration(): PortableType -> column type fragment for DDL
- render_literal(): PortableType + value -> value fragment for INSERT

PostgreSQL reports array columns through their element type prefixed with an
underscore (``_int4``, ``_jsonb``); normalize() rewrites those into an explicit
array-of-element tag.

All functions here are pure.
"""

import json
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from core.errors import TypeMappingError


class TypeKind(Enum):
    BASE = "base"
    ARRAY = "array"
    JSON = "json"
    JSONB = "jsonb"
    ENUM = "enum"
    UNKNOWN = "unknown"


class LiteralStyle(Enum):
    """How a scalar of the type is written in a VALUES list"""
    NUMERIC = "numeric"
    BOOLEAN = "boolean"
    TEXT = "text"
    BINARY = "binary"


# Catalog (udt) name -> (declared SQL name, literal style)
POSTGRES_BASE_TYPES: Dict[str, Tuple[str, LiteralStyle]] = {
    # Numeric
    'int2': ('smallint', LiteralStyle.NUMERIC),
    'int4': ('integer', LiteralStyle.NUMERIC),
    'int8': ('bigint', LiteralStyle.NUMERIC),
    'smallint': ('smallint', LiteralStyle.NUMERIC),
    'integer': ('integer', LiteralStyle.NUMERIC),
    'bigint': ('bigint', LiteralStyle.NUMERIC),
    'numeric': ('numeric', LiteralStyle.NUMERIC),
    'decimal': ('numeric', LiteralStyle.NUMERIC),
    'float4': ('real', LiteralStyle.NUMERIC),
    'float8': ('double precision', LiteralStyle.NUMERIC),
    'real': ('real', LiteralStyle.NUMERIC),
    'double precision': ('double precision', LiteralStyle.NUMERIC),
    'oid': ('oid', LiteralStyle.NUMERIC),
    'money': ('money', LiteralStyle.TEXT),

    # Boolean
    'bool': ('boolean', LiteralStyle.BOOLEAN),
    'boolean': ('boolean', LiteralStyle.BOOLEAN),

    # String
    'varchar': ('character varying', LiteralStyle.TEXT),
    'character varying': ('character varying', LiteralStyle.TEXT),
    'bpchar': ('character', LiteralStyle.TEXT),
    'character': ('character', LiteralStyle.TEXT),
    'text': ('text', LiteralStyle.TEXT),
    'name': ('name', LiteralStyle.TEXT),
    'citext': ('citext', LiteralStyle.TEXT),
    'xml': ('xml', LiteralStyle.TEXT),
    'tsvector': ('tsvector', LiteralStyle.TEXT),

    # Bit strings
    'bit': ('bit', LiteralStyle.TEXT),
    'varbit': ('bit varying', LiteralStyle.TEXT),

    # Date/Time
    'date': ('date', LiteralStyle.TEXT),
    'time': ('time without time zone', LiteralStyle.TEXT),
    'timetz': ('time with time zone', LiteralStyle.TEXT),
    'timestamp': ('timestamp without time zone', LiteralStyle.TEXT),
    'timestamptz': ('timestamp with time zone', LiteralStyle.TEXT),
    'interval': ('interval', LiteralStyle.TEXT),

    # Binary
    'bytea': ('bytea', LiteralStyle.BINARY),

    # Special
    'uuid': ('uuid', LiteralStyle.TEXT),
    'inet': ('inet', LiteralStyle.TEXT),
    'cidr': ('cidr', LiteralStyle.TEXT),
    'macaddr': ('macaddr', LiteralStyle.TEXT),
    'macaddr8': ('macaddr8', LiteralStyle.TEXT),
}

# Declared names that accept a (n) length qualifier
LENGTH_TYPES = frozenset({'character varying', 'character', 'bit', 'bit varying'})

ARRAY_PREFIX = '_'


@dataclass(frozen=True)
class PortableType:
    """Dialect-neutral column type tag"""
    kind: TypeKind
    name: str
    style: LiteralStyle = LiteralStyle.TEXT
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    element: Optional['PortableType'] = None

    @property
    def is_array(self) -> bool:
        return self.kind == TypeKind.ARRAY

    @property
    def is_json(self) -> bool:
        return self.kind in (TypeKind.JSON, TypeKind.JSONB)

    @property
    def tag(self) -> str:
        if self.kind == TypeKind.ARRAY:
            return f"array<{self.element.tag}>"
        if self.kind in (TypeKind.ENUM, TypeKind.UNKNOWN):
            return f"{self.kind.value}<{self.name}>"
        if self.length:
            return f"{self.name}({self.length})"
        return self.name

    @classmethod
    def unknown(cls, raw_type_name: str) -> 'PortableType':
        return cls(TypeKind.UNKNOWN, raw_type_name)

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind.value, 'name': self.name, 'tag': self.tag}
        if self.length is not None:
            data['length'] = self.length
        if self.precision is not None:
            data['precision'] = self.precision
            data['scale'] = self.scale
        if self.element is not None:
            data['element'] = self.element.to_dict()
        return data

    def __repr__(self):
        return f"PortableType({self.tag})"


def quote_ident(identifier: str) -> str:
    """Double-quote an identifier, doubling embedded quotes"""
    return '"' + identifier.replace('"', '""') + '"'


def quote_literal(text: str) -> str:
    """Single-quote a string literal, doubling embedded quotes"""
    return "'" + text.replace("'", "''") + "'"


def normalize(raw_type_name: str, max_length: Optional[int] = None, *,
              enums: Iterable[str] = (), precision: Optional[int] = None,
              scale: Optional[int] = None) -> PortableType:
    """
    Map a catalog type name to a PortableType.

    Args:
        raw_type_name: Catalog type name, e.g. ``int4``, ``_jsonb``, ``status_enum``
        max_length: character_maximum_length reported for the column
        enums: Names of user-defined enum types in the same snapshot
        precision: numeric_precision (only used for ``numeric``)
        scale: numeric_scale (only used for ``numeric``)

    Raises:
        TypeMappingError: the name matches no known portable type
    """
    if not isinstance(raw_type_name, str) or not raw_type_name.strip():
        raise TypeMappingError(f"Invalid column type name: {raw_type_name!r}",
                               {'type': raw_type_name})

    raw = raw_type_name.strip()
    enums = frozenset(enums)

    if raw.startswith(ARRAY_PREFIX):
        element = normalize(raw[len(ARRAY_PREFIX):], max_length, enums=enums,
                            precision=precision, scale=scale)
        return PortableType(TypeKind.ARRAY, element.name, element.style, element=element)

    if raw in enums:
        return PortableType(TypeKind.ENUM, raw, LiteralStyle.TEXT)

    key = raw.lower()
    if key == 'json':
        return PortableType(TypeKind.JSON, 'json')
    if key == 'jsonb':
        return PortableType(TypeKind.JSONB, 'jsonb')

    if key not in POSTGRES_BASE_TYPES:
        raise TypeMappingError(f"Unsupported column type '{raw}'", {'type': raw})

    declared, style = POSTGRES_BASE_TYPES[key]
    length = int(max_length) if max_length and declared in LENGTH_TYPES else None

    if declared == 'numeric' and precision is not None:
        return PortableType(TypeKind.BASE, declared, style, precision=int(precision),
                            scale=int(scale or 0))

    return PortableType(TypeKind.BASE, declared, style, length=length)


def render_declaration(ptype: PortableType) -> str:
    """Type fragment used in a column declaration"""
    if ptype.kind == TypeKind.UNKNOWN:
        raise TypeMappingError(f"Cannot declare column of unsupported type '{ptype.name}'",
                               {'type': ptype.name})
    if ptype.kind == TypeKind.ARRAY:
        return f"{render_declaration(ptype.element)}[]"
    if ptype.kind == TypeKind.ENUM:
        return quote_ident(ptype.name)
    if ptype.length:
        return f"{ptype.name}({ptype.length})"
    if ptype.precision is not None:
        return f"{ptype.name}({ptype.precision},{ptype.scale or 0})"
    return ptype.name


def render_literal(ptype: PortableType, value: Any) -> str:
    """
    Value fragment used in an INSERT values-list.

    Raises:
        TypeMappingError: the value's runtime shape has no encoding for the type
    """
    if value is None:
        return 'NULL'

    if ptype.kind == TypeKind.UNKNOWN:
        raise TypeMappingError(f"Cannot encode value for unsupported type '{ptype.name}'",
                               {'type': ptype.name})

    if ptype.kind == TypeKind.ARRAY:
        return _render_array(ptype, value)

    if ptype.is_json:
        return f"{quote_literal(to_json_text(value))}::{ptype.name}"

    if isinstance(value, dict):
        # Composite values travel as text and are cast back by the destination
        return f"{quote_literal(to_json_text(value))}::{render_declaration(ptype)}"

    return _render_scalar(ptype, value)


def to_json_text(value: Any) -> str:
    """Serialize a driver value to JSON text"""
    return json.dumps(value, ensure_ascii=False, default=_json_default)


def _json_default(value: Any):
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeMappingError(f"No JSON encoding for {type(value).__name__}",
                           {'value_type': type(value).__name__})


def _render_scalar(ptype: PortableType, value: Any) -> str:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return 'TRUE' if value else 'FALSE'
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return quote_literal(_non_finite_text(value))
        return repr(value)
    if isinstance(value, Decimal):
        if not value.is_finite():
            return quote_literal('NaN' if value.is_nan() else _non_finite_text(float(value)))
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"'\\x{bytes(value).hex()}'::bytea"
    if isinstance(value, (datetime, date, time)):
        return quote_literal(value.isoformat())
    if isinstance(value, timedelta):
        return quote_literal(_interval_text(value))
    if isinstance(value, uuid.UUID):
        return quote_literal(str(value))
    if isinstance(value, str):
        return quote_literal(value)

    raise TypeMappingError(
        f"No literal encoding for {type(value).__name__} value in {ptype.tag} column",
        {'type': ptype.tag, 'value_type': type(value).__name__}
    )


def _render_array(ptype: PortableType, value: Any) -> str:
    declaration = render_declaration(ptype)

    # Array text delivered as-is by the driver (no caster for the element type)
    if isinstance(value, str):
        return f"{quote_literal(value)}::{declaration}"

    if not isinstance(value, (list, tuple)):
        raise TypeMappingError(
            f"Expected a sequence for {ptype.tag} column, got {type(value).__name__}",
            {'type': ptype.tag, 'value_type': type(value).__name__}
        )

    if ptype.element.is_json:
        # Double encoding: element JSON text re-quoted as an array element
        elements = []
        for item in value:
            if item is None:
                elements.append('NULL')
            else:
                elements.append(json.dumps(to_json_text(item), ensure_ascii=False))
        return f"{quote_literal('{' + ','.join(elements) + '}')}::{declaration}"

    return f"{_render_array_elements(ptype.element, value)}::{declaration}"


def _render_array_elements(element: PortableType, items) -> str:
    rendered = []
    for item in items:
        if isinstance(item, (list, tuple)):
            rendered.append(_render_array_elements(element, item))
        elif isinstance(item, dict):
            raise TypeMappingError(
                f"Nested object inside {element.tag} array has no encoding",
                {'type': element.tag, 'value_type': 'dict'}
            )
        else:
            rendered.append(render_literal(element, item))
    return 'ARRAY[' + ', '.join(rendered) + ']'


def _non_finite_text(value: float) -> str:
    if math.isnan(value):
        return 'NaN'
    return 'Infinity' if value > 0 else '-Infinity'


def _interval_text(value: timedelta) -> str:
    return f"{value.days} days {value.seconds} seconds {value.microseconds} microseconds"
