#!/usr/bin/env python3
"""
dbreplica PostgreSQL Catalog Introspector

Reads a live PostgreSQL schema through its system catalogs and assembles a
DatabaseSnapshot. All PostgreSQL-specific query text lives in this module;
the compiler and replicator only ever see the snapshot model.

The work is split in two:
- build_* / parse_* functions: pure conversion of raw catalog rows into
  snapshot structs (unit-testable without a database)
- CatalogIntrospector: runs the catalog queries inside one read transaction
  and fans out the per-table row fetches
"""

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Optional, Set

import psycopg2.extras

from core.errors import IntrospectionError, TypeMappingError
from core.events import SyncObserver, SyncPhase, emit
from core.schema_ir import (
    Column, DatabaseSnapshot, EnumType, ForeignKeyRef, Index, Sequence, Table, View
)
from core.type_codec import PortableType, TypeKind, normalize, quote_ident

logger = logging.getLogger(__name__)

# ===== Catalog queries =====

# Constraints are matched through pg_constraint oids: constraint names are
# only unique per table, not per schema
COLUMNS_QUERY = """
    SELECT
        c.table_name,
        c.column_name,
        c.ordinal_position,
        c.data_type,
        c.udt_name,
        c.character_maximum_length,
        c.numeric_precision,
        c.numeric_scale,
        c.is_nullable,
        c.column_default,
        (pk.column_name IS NOT NULL) AS is_primary_key,
        (uq.column_name IS NOT NULL) AS is_unique,
        fk.ref_table,
        fk.ref_column
    FROM information_schema.columns c
    JOIN information_schema.tables t
        ON t.table_schema = c.table_schema
        AND t.table_name = c.table_name
    LEFT JOIN (
        SELECT cl.relname::text AS table_name, a.attname::text AS column_name
        FROM pg_constraint con
        JOIN pg_class cl ON cl.oid = con.conrelid
        JOIN pg_namespace ns ON ns.oid = cl.relnamespace
        JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = ANY(con.conkey)
        WHERE con.contype = 'p'
        AND ns.nspname = %(schema)s
    ) pk ON pk.table_name = c.table_name AND pk.column_name = c.column_name
    LEFT JOIN (
        SELECT DISTINCT cl.relname::text AS table_name, a.attname::text AS column_name
        FROM pg_constraint con
        JOIN pg_class cl ON cl.oid = con.conrelid
        JOIN pg_namespace ns ON ns.oid = cl.relnamespace
        JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = con.conkey[1]
        WHERE con.contype = 'u'
        AND cardinality(con.conkey) = 1
        AND ns.nspname = %(schema)s
    ) uq ON uq.table_name = c.table_name AND uq.column_name = c.column_name
    LEFT JOIN (
        SELECT DISTINCT ON (cl.relname, a.attname)
            cl.relname::text AS table_name,
            a.attname::text AS column_name,
            rcl.relname::text AS ref_table,
            ra.attname::text AS ref_column
        FROM pg_constraint con
        JOIN pg_class cl ON cl.oid = con.conrelid
        JOIN pg_namespace ns ON ns.oid = cl.relnamespace
        JOIN pg_class rcl ON rcl.oid = con.confrelid
        CROSS JOIN LATERAL unnest(con.conkey, con.confkey) AS k(attnum, ref_attnum)
        JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
        JOIN pg_attribute ra ON ra.attrelid = con.confrelid AND ra.attnum = k.ref_attnum
        WHERE con.contype = 'f'
        AND ns.nspname = %(schema)s
        ORDER BY cl.relname, a.attname, con.conname
    ) fk ON fk.table_name = c.table_name AND fk.column_name = c.column_name
    WHERE c.table_schema = %(schema)s
    AND t.table_type = 'BASE TABLE'
    AND (%(table_name)s::text IS NULL OR c.table_name = %(table_name)s::text)
    ORDER BY c.table_name, c.ordinal_position
"""

ENUMS_QUERY = """
    SELECT t.typname AS name, e.enumlabel AS label
    FROM pg_type t
    JOIN pg_enum e ON e.enumtypid = t.oid
    JOIN pg_namespace n ON n.oid = t.typnamespace
    WHERE n.nspname = %(schema)s
    ORDER BY t.typname, e.enumsortorder
"""

SEQUENCES_QUERY = """
    SELECT
        sequencename AS name,
        start_value,
        min_value,
        max_value,
        increment_by,
        cycle,
        last_value
    FROM pg_sequences
    WHERE schemaname = %(schema)s
    ORDER BY sequencename
"""

# Indexes backing PRIMARY KEY / UNIQUE / EXCLUDE constraints are recreated
# by the table DDL, so only standalone indexes are listed
INDEXES_QUERY = """
    SELECT i.indexname, i.tablename, i.indexdef
    FROM pg_indexes i
    WHERE i.schemaname = %(schema)s
    AND NOT EXISTS (
        SELECT 1
        FROM pg_constraint con
        JOIN pg_class ic ON ic.oid = con.conindid
        JOIN pg_namespace ns ON ns.oid = ic.relnamespace
        WHERE con.contype IN ('p', 'u', 'x')
        AND ic.relname = i.indexname
        AND ns.nspname = i.schemaname
    )
    ORDER BY i.tablename, i.indexname
"""

VIEWS_QUERY = """
    SELECT
        v.viewname AS name,
        v.definition,
        COALESCE(
            array_agg(DISTINCT dep.relname::text) FILTER (WHERE dep.relname IS NOT NULL),
            '{}'::text[]
        ) AS depends_on
    FROM pg_views v
    JOIN pg_namespace vn ON vn.nspname = v.schemaname
    JOIN pg_class vc ON vc.relname = v.viewname AND vc.relnamespace = vn.oid
    LEFT JOIN pg_rewrite r ON r.ev_class = vc.oid
    LEFT JOIN pg_depend d ON d.objid = r.oid AND d.deptype = 'n'
    LEFT JOIN pg_class dep ON dep.oid = d.refobjid AND dep.relkind = 'v' AND dep.oid <> vc.oid
    WHERE v.schemaname = %(schema)s
    GROUP BY v.viewname, v.definition
    ORDER BY v.viewname
"""

# ===== Pure catalog-row builders =====

_IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][\w$]*)'

# CREATE [UNIQUE] INDEX name ON [ONLY] [schema.]table USING method (column)
INDEX_DEFINITION = re.compile(
    rf'^\s*CREATE\s+(?P<unique>UNIQUE\s+)?INDEX\s+(?P<name>{_IDENT})\s+'
    rf'ON\s+(?:ONLY\s+)?(?:(?P<schema>{_IDENT})\.)?(?P<table>{_IDENT})\s+'
    rf'USING\s+(?P<method>\w+)\s*\(\s*(?P<column>{_IDENT})\s*\)\s*;?\s*$',
    re.IGNORECASE
)

_NEXTVAL = re.compile(r"nextval\('((?:[^']|'')+)'(?:::regclass)?\)", re.IGNORECASE)


def unquote_ident(identifier: str) -> str:
    if len(identifier) >= 2 and identifier.startswith('"') and identifier.endswith('"'):
        return identifier[1:-1].replace('""', '"')
    return identifier


def build_tables(column_rows: Iterable[Dict[str, Any]], enum_names: Iterable[str] = ()) -> List[Table]:
    """
    Group joined column metadata rows into tables.

    Rows must arrive ordered by table, then ordinal position. A column whose
    type cannot be mapped keeps an UNKNOWN portable type; compiling that table
    later raises TypeMappingError and the caller's policy applies.
    """
    enum_names = frozenset(enum_names)
    tables: Dict[str, Table] = {}

    for row in column_rows:
        table_name = row['table_name']
        table = tables.get(table_name)
        if table is None:
            table = tables[table_name] = Table(name=table_name)

        raw_type = row['udt_name']
        try:
            data_type = normalize(
                raw_type,
                row.get('character_maximum_length'),
                enums=enum_names,
                precision=row.get('numeric_precision') if raw_type == 'numeric' else None,
                scale=row.get('numeric_scale') if raw_type == 'numeric' else None,
            )
        except TypeMappingError as e:
            logger.warning(f"{table_name}.{row['column_name']}: {e.message}. "
                           f"The table cannot be replicated without a type mapping.")
            data_type = PortableType.unknown(raw_type)

        foreign_key = None
        if row.get('ref_table'):
            foreign_key = ForeignKeyRef(table=row['ref_table'], column=row['ref_column'])

        table.columns.append(Column(
            name=row['column_name'],
            data_type=data_type,
            max_length=row.get('character_maximum_length'),
            nullable=row.get('is_nullable', 'YES') == 'YES',
            default=row.get('column_default'),
            is_primary_key=bool(row.get('is_primary_key')),
            is_unique=bool(row.get('is_unique')),
            foreign_key=foreign_key,
        ))

    return list(tables.values())


def build_enums(rows: Iterable[Dict[str, Any]]) -> List[EnumType]:
    """Group (name, label) rows into enum types, keeping label order"""
    enums: Dict[str, EnumType] = {}
    for row in rows:
        enum = enums.get(row['name'])
        if enum is None:
            enum = enums[row['name']] = EnumType(name=row['name'])
        enum.labels.append(row['label'])
    return list(enums.values())


def build_sequences(rows: Iterable[Dict[str, Any]]) -> List[Sequence]:
    return [
        Sequence(
            name=row['name'],
            start=int(row['start_value']),
            min=int(row['min_value']),
            max=int(row['max_value']),
            increment_by=int(row['increment_by']),
            cycle=bool(row['cycle']),
            last_value=int(row['last_value']) if row.get('last_value') is not None else None,
        )
        for row in rows
    ]


def parse_index_definition(definition: str) -> Index:
    """
    Parse a pg_indexes.indexdef string.

    Raises:
        IntrospectionError: the definition is outside the supported grammar
            (multi-column, expression, partial or INCLUDE indexes)
    """
    match = INDEX_DEFINITION.match(definition or '')
    if not match:
        raise IntrospectionError(
            f"Unsupported index definition: {definition!r}",
            {'phase': SyncPhase.INTROSPECT.value, 'definition': definition}
        )
    return Index(
        name=unquote_ident(match.group('name')),
        table=unquote_ident(match.group('table')),
        column=unquote_ident(match.group('column')),
        method=match.group('method').lower(),
        unique=bool(match.group('unique')),
    )


def build_indexes(rows: Iterable[Dict[str, Any]], table_names: Set[str]) -> List[Index]:
    """Parse index rows, keeping only indexes on tables in the snapshot"""
    indexes = []
    for row in rows:
        if row['tablename'] not in table_names:
            continue
        indexes.append(parse_index_definition(row['indexdef']))
    return indexes


def build_views(rows: Iterable[Dict[str, Any]]) -> List[View]:
    return [
        View(name=row['name'], definition=row['definition'],
             depends_on=sorted(row.get('depends_on') or []))
        for row in rows
    ]


def referenced_enums(tables: Iterable[Table]) -> Set[str]:
    names = set()
    for table in tables:
        for column in table.columns:
            data_type = column.data_type.element if column.data_type.is_array else column.data_type
            if data_type.kind == TypeKind.ENUM:
                names.add(data_type.name)
    return names


def referenced_sequences(tables: Iterable[Table]) -> Set[str]:
    """Sequence names used by nextval(...) defaults"""
    names = set()
    for table in tables:
        for column in table.columns:
            if not column.default:
                continue
            for match in _NEXTVAL.finditer(column.default):
                qualified = match.group(1).replace("''", "'")
                names.add(unquote_ident(re.split(r'\.(?=(?:[^"]*"[^"]*")*[^"]*$)', qualified)[-1]))
    return names


# ===== Introspector =====

class CatalogIntrospector:
    """
    Runs the catalog queries against an open psycopg2 connection.

    Statements share one connection; a connection-level lock keeps the driver
    to one in-flight statement while row fetches fan out across threads.
    """

    def __init__(self, connection, schema: str = 'public', database_name: str = '',
                 fetch_workers: int = 4, observer: Optional[SyncObserver] = None,
                 lock: Optional[threading.RLock] = None):
        self.connection = connection
        self.schema = schema
        self.database_name = database_name
        self.fetch_workers = max(1, fetch_workers)
        self.observer = observer
        self._lock = lock or threading.RLock()

    def _query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            with self.connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]

    def fetch_snapshot(self, table_name_filter: Optional[str] = None) -> DatabaseSnapshot:
        """
        Capture schema and rows inside a single read transaction.

        Args:
            table_name_filter: Restrict the snapshot to this one table

        Raises:
            IntrospectionError: any query or parse failure (transaction rolled back)
        """
        start_time = time.time()
        params = {'schema': self.schema, 'table_name': table_name_filter}

        emit(self.observer, SyncPhase.INTROSPECT, "reading catalog", entity=self.schema)

        try:
            column_rows = self._query(COLUMNS_QUERY, params)
            enums = build_enums(self._query(ENUMS_QUERY, params))
            tables = build_tables(column_rows, {e.name for e in enums})

            if table_name_filter and not tables:
                raise IntrospectionError(
                    f"Table '{table_name_filter}' not found in schema '{self.schema}'",
                    {'phase': SyncPhase.INTROSPECT.value, 'table': table_name_filter}
                )

            sequences = build_sequences(self._query(SEQUENCES_QUERY, params))
            indexes = build_indexes(self._query(INDEXES_QUERY, params), {t.name for t in tables})
            views = build_views(self._query(VIEWS_QUERY, params))

            if table_name_filter:
                # Only what the filtered table itself needs
                enum_refs = referenced_enums(tables)
                sequence_refs = referenced_sequences(tables)
                enums = [e for e in enums if e.name in enum_refs]
                sequences = [s for s in sequences if s.name in sequence_refs]
                views = []

            self._fetch_rows(tables)
            self.connection.commit()

        except IntrospectionError:
            self._rollback()
            raise
        except Exception as e:
            self._rollback()
            raise IntrospectionError(
                f"Catalog introspection failed: {e}",
                {'phase': SyncPhase.INTROSPECT.value}
            ) from e

        snapshot = DatabaseSnapshot(
            name=self.database_name,
            enums=enums,
            sequences=sequences,
            tables=tables,
            indexes=indexes,
            views=views,
            table_filter=table_name_filter,
        )

        duration = time.time() - start_time
        emit(self.observer, SyncPhase.INTROSPECT,
             f"captured {len(tables)} tables, {len(enums)} enums, {len(sequences)} sequences, "
             f"{len(indexes)} indexes, {len(views)} views, {snapshot.row_count} rows "
             f"({duration:.2f}s)",
             entity=self.schema, count=snapshot.row_count)
        return snapshot

    def _fetch_rows(self, tables: List[Table]):
        if not tables:
            return

        emit(self.observer, SyncPhase.FETCH_ROWS, "fetching rows", count=len(tables))

        with ThreadPoolExecutor(max_workers=min(self.fetch_workers, len(tables))) as executor:
            futures = {executor.submit(self._fetch_table_rows, table): table for table in tables}
            for future in as_completed(futures):
                table = futures[future]
                table.rows.extend(future.result())
                emit(self.observer, SyncPhase.FETCH_ROWS, "rows fetched",
                     entity=table.name, count=len(table.rows))

    def _fetch_table_rows(self, table: Table) -> List[Dict[str, Any]]:
        query = f"SELECT * FROM {quote_ident(self.schema)}.{quote_ident(table.name)}"
        if table.primary_key:
            # Deterministic retrieval order
            query += " ORDER BY " + ", ".join(quote_ident(c) for c in table.primary_key)
        return self._query(query)

    def _rollback(self):
        try:
            self.connection.rollback()
        except Exception as e:
            logger.error(f"Failed to roll back introspection transaction: {e}")
