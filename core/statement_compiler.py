#!/usr/bin/env python3
"""
dbreplica Statement Compiler
============================

Turns snapshot fragments into PostgreSQL DDL/DML text and arranges them into
an ordered apply plan.

Every compile_* function is pure: it takes one snapshot fragment and returns
statement text. build_plan() fixes the phase order:

    drop tables -> enums -> sequences -> tables (+ rows) -> indexes -> views

so that the types and sequences a table's columns or defaults depend on exist
before the table, and indexes/views are created once their tables exist.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from core.errors import TypeMappingError
from core.events import SyncObserver, SyncPhase, emit
from core.schema_ir import DatabaseSnapshot, EnumType, Index, Sequence, Table, View
from core.type_codec import quote_ident, quote_literal, render_declaration, render_literal

logger = logging.getLogger(__name__)

TYPE_ERROR_ABORT = 'abort'
TYPE_ERROR_SKIP = 'skip'
TYPE_ERROR_POLICIES = (TYPE_ERROR_ABORT, TYPE_ERROR_SKIP)

# Any function call inside the default, e.g. nextval('s'::regclass), now()
_FUNCTION_CALL = re.compile(r'[A-Za-z_][\w.]*\s*\(')
# Array and row constructors: ARRAY[1, 2], ROW(1, 2)
_CONSTRUCTOR = re.compile(r"\b(ARRAY\s*\[|ROW\s*\()", re.IGNORECASE)
# SQL value keywords that behave like niladic functions
_VALUE_KEYWORD = re.compile(
    r'^\s*(CURRENT_TIMESTAMP|CURRENT_DATE|CURRENT_TIME|LOCALTIMESTAMP|LOCALTIME|'
    r'CURRENT_USER|SESSION_USER|CURRENT_SCHEMA|USER|NULL)\b(\s*::.+)?\s*$',
    re.IGNORECASE | re.DOTALL
)
# 'text'::some_type as reported by the catalog for literal defaults
_QUOTED_DEFAULT = re.compile(r"^\s*'((?:[^']|'')*)'(?:\s*::.+)?\s*$", re.DOTALL)
_PAREN_WRAPPED = re.compile(r'^\s*\((.*)\)\s*$', re.DOTALL)


@dataclass
class PlanStep:
    """One entity's statements within a phase"""
    entity: str
    sql: str
    rows: int = 0


@dataclass
class PlanPhase:
    """Ordered group of steps; phases run strictly one after another"""
    phase: SyncPhase
    steps: List[PlanStep] = field(default_factory=list)
    concurrent: bool = False

    @property
    def name(self) -> str:
        return self.phase.value


def render_default(expression: str) -> str:
    """
    Render a catalog default expression for a column declaration.

    Function-call and constructor shaped defaults are emitted verbatim;
    anything else is emitted as a string literal.
    """
    if (_FUNCTION_CALL.search(expression) or _CONSTRUCTOR.search(expression)
            or _VALUE_KEYWORD.match(expression)):
        return expression.strip()

    quoted = _QUOTED_DEFAULT.match(expression)
    if quoted:
        return quote_literal(quoted.group(1).replace("''", "'"))

    bare = expression.strip()
    wrapped = _PAREN_WRAPPED.match(bare)
    if wrapped:
        bare = wrapped.group(1).strip()
    return quote_literal(bare)


def compile_drop(tables: Iterable[Table]) -> str:
    return "\n".join(f"DROP TABLE IF EXISTS {quote_ident(t.name)} CASCADE;" for t in tables)


def compile_enum(enum: EnumType, replace: bool = True) -> str:
    """
    Recreate an enum type.

    With replace=False an existing type is kept when its labels match and
    rejected when they differ; tables outside the snapshot may still use it.
    """
    labels = ", ".join(quote_literal(label) for label in enum.labels)
    name = quote_ident(enum.name)
    if replace:
        return (f"DROP TYPE IF EXISTS {name};\n"
                f"CREATE TYPE {name} AS ENUM ({labels});")

    regtype = quote_literal(name)
    return (
        "DO $enum$\n"
        "BEGIN\n"
        f"    IF to_regtype({regtype}) IS NULL THEN\n"
        f"        CREATE TYPE {name} AS ENUM ({labels});\n"
        f"    ELSIF ARRAY(SELECT enumlabel::text FROM pg_enum WHERE enumtypid = {regtype}::regtype\n"
        f"                ORDER BY enumsortorder) <> ARRAY[{labels}]::text[] THEN\n"
        f"        RAISE EXCEPTION 'enum type % exists with different labels', {quote_literal(enum.name)};\n"
        "    END IF;\n"
        "END\n"
        "$enum$;"
    )


def compile_sequence(sequence: Sequence) -> str:
    name = quote_ident(sequence.name)
    sql = (f"CREATE SEQUENCE IF NOT EXISTS {name}"
           f" INCREMENT BY {sequence.increment_by}"
           f" MINVALUE {sequence.min}"
           f" MAXVALUE {sequence.max}"
           f" START WITH {sequence.start}"
           f" CACHE 1"
           f" {'CYCLE' if sequence.cycle else 'NO CYCLE'};")
    if sequence.last_value is not None:
        sql += f"\nSELECT setval({quote_literal(name)}, {sequence.last_value}, true);"
    return sql


def compile_table(table: Table) -> str:
    """CREATE TABLE with column types and inline constraints"""
    composite_pk = len(table.primary_key) > 1
    definitions = []

    for column in table.columns:
        try:
            declaration = render_declaration(column.data_type)
        except TypeMappingError as e:
            raise TypeMappingError(
                f"{table.name}.{column.name}: {e.message}",
                {**e.details, 'table': table.name, 'column': column.name}
            ) from e

        parts = [quote_ident(column.name), declaration]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.is_primary_key and not composite_pk:
            parts.append("PRIMARY KEY")
        if column.default is not None:
            parts.append(f"DEFAULT {render_default(column.default)}")
        if column.foreign_key:
            fk = column.foreign_key
            parts.append(f"REFERENCES {quote_ident(fk.table)}({quote_ident(fk.column)})")
        if column.is_unique:
            parts.append("UNIQUE")
        definitions.append(" ".join(parts))

    if composite_pk:
        pk_cols = ", ".join(quote_ident(c) for c in table.primary_key)
        definitions.append(f"PRIMARY KEY ({pk_cols})")

    body = ",\n    ".join(definitions)
    return f"CREATE TABLE IF NOT EXISTS {quote_ident(table.name)} (\n    {body}\n);"


def compile_insert(table: Table) -> str:
    """One multi-row INSERT, or an empty string when the table has no rows"""
    if not table.rows:
        return ""

    column_names = list(table.rows[0].keys())
    types = {}
    for name in column_names:
        column = table.column(name)
        if column is None:
            raise TypeMappingError(
                f"{table.name}: row key '{name}' has no declared column",
                {'table': table.name, 'column': name}
            )
        types[name] = column.data_type

    tuples = []
    for row in table.rows:
        values = []
        for name in column_names:
            try:
                values.append(render_literal(types[name], row.get(name)))
            except TypeMappingError as e:
                raise TypeMappingError(
                    f"{table.name}.{name}: {e.message}",
                    {**e.details, 'table': table.name, 'column': name}
                ) from e
        tuples.append("(" + ", ".join(values) + ")")

    cols = ", ".join(quote_ident(n) for n in column_names)
    return f"INSERT INTO {quote_ident(table.name)} ({cols}) VALUES\n" + ",\n".join(tuples) + ";"


def compile_index(index: Index) -> str:
    unique = "UNIQUE " if index.unique else ""
    return (f"CREATE {unique}INDEX IF NOT EXISTS {quote_ident(index.name)} "
            f"ON {quote_ident(index.table)} USING {index.method} ({quote_ident(index.column)});")


def compile_view(view: View) -> str:
    definition = view.definition.strip().rstrip(';').rstrip()
    name = quote_ident(view.name)
    return (f"DROP VIEW IF EXISTS {name} CASCADE;\n"
            f"CREATE VIEW {name} AS {definition};")


def _dependency_order(names: List[str], deps: dict, kind: str) -> List[str]:
    """Discovery order, moving each entry after the entries it depends on"""
    ordered = []
    placed = set()
    remaining = list(names)

    while remaining:
        ready = next((n for n in remaining if deps.get(n, set()) <= placed), None)
        if ready is None:
            logger.warning(f"Circular {kind} dependency among: {', '.join(remaining)}; "
                           f"keeping discovery order")
            ready = remaining[0]
        ordered.append(ready)
        placed.add(ready)
        remaining.remove(ready)

    return ordered


def order_tables(tables: List[Table]) -> List[Table]:
    """Tables sorted so referenced tables are created first"""
    by_name = {t.name: t for t in tables}
    deps = {
        t.name: {ref for ref in t.referenced_tables if ref in by_name and ref != t.name}
        for t in tables
    }
    return [by_name[n] for n in _dependency_order([t.name for t in tables], deps, 'foreign-key')]


def order_views(views: List[View]) -> List[View]:
    """Views sorted so views they read from are created first"""
    by_name = {v.name: v for v in views}
    deps = {
        v.name: {d for d in v.depends_on if d in by_name and d != v.name}
        for v in views
    }
    return [by_name[n] for n in _dependency_order([v.name for v in views], deps, 'view')]


def build_plan(snapshot: DatabaseSnapshot, type_error_policy: str = TYPE_ERROR_ABORT,
               observer: Optional[SyncObserver] = None) -> List[PlanPhase]:
    """
    Compile a snapshot into ordered apply phases.

    Args:
        snapshot: Snapshot to replay
        type_error_policy: 'abort' re-raises a table's TypeMappingError,
            'skip' leaves that table (and its indexes) out of the plan
        observer: Receives a warning event per skipped table

    Raises:
        TypeMappingError: a table could not be compiled and policy is 'abort'
    """
    if type_error_policy not in TYPE_ERROR_POLICIES:
        raise ValueError(f"Unknown type error policy '{type_error_policy}'")

    table_steps = []
    kept = []
    skipped = set()

    for table in order_tables(snapshot.tables):
        try:
            create_sql = compile_table(table)
            insert_sql = compile_insert(table)
        except TypeMappingError as e:
            if type_error_policy == TYPE_ERROR_ABORT:
                raise
            skipped.add(table.name)
            emit(observer, SyncPhase.CREATE_TABLES, f"skipped: {e.message}",
                 entity=table.name, level=logging.WARNING)
            continue

        sql = f"{create_sql}\n{insert_sql}" if insert_sql else create_sql
        table_steps.append(PlanStep(table.name, sql, rows=len(table.rows)))
        kept.append(table)

    return [
        PlanPhase(SyncPhase.DROP_TABLES,
                  [PlanStep(t.name, compile_drop([t])) for t in kept], concurrent=True),
        PlanPhase(SyncPhase.CREATE_ENUMS,
                  [PlanStep(e.name, compile_enum(e, replace=snapshot.table_filter is None))
                   for e in snapshot.enums], concurrent=True),
        PlanPhase(SyncPhase.CREATE_SEQUENCES,
                  [PlanStep(s.name, compile_sequence(s)) for s in snapshot.sequences], concurrent=True),
        PlanPhase(SyncPhase.CREATE_TABLES, table_steps),
        PlanPhase(SyncPhase.CREATE_INDEXES,
                  [PlanStep(i.name, compile_index(i)) for i in snapshot.indexes
                   if i.table not in skipped], concurrent=True),
        PlanPhase(SyncPhase.CREATE_VIEWS,
                  [PlanStep(v.name, compile_view(v)) for v in order_views(snapshot.views)]),
    ]


def plan_statements(plan: List[PlanPhase]) -> List[str]:
    """Flatten a plan into its statement texts, in apply order"""
    return [step.sql for phase in plan for step in phase.steps]
