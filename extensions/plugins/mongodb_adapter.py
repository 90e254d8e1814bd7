#!/usr/bin/env python3
"""
dbreplica MongoDB Adapter

Document-store endpoint for a sync run. Collections map to tables:

- get_data: every document of every collection (or the one filtered
  collection) becomes a row; one column is inferred per top-level key,
  `_id` is the primary key rendered as text
- insert_data: each table's collection is dropped and recreated from the
  snapshot rows, then single-field indexes are created

Enums, sequences and views have no document-store counterpart and are
skipped with a warning. Writes are not transactional.

ObjectId keys travel through the snapshot as their 24-character hex text.
On write, an `_id` in that form becomes an ObjectId again, so a MongoDB to
MongoDB sync keeps the key type; text keys of any other shape stay text.
"""

import datetime
import decimal
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urlparse

import pymongo
from bson import Decimal128, ObjectId
from pymongo.errors import PyMongoError

from core.database_manager import DatabaseAdapter, mask_credentials
from core.errors import ConnectionError, IntrospectionError, ReplicationError
from core.events import SyncObserver, SyncPhase, emit
from core.schema_ir import Column, DatabaseSnapshot, Index, Row, Table
from core.statement_compiler import order_tables
from core.type_codec import PortableType, normalize

logger = logging.getLogger(__name__)

ID_FIELD = '_id'


class ConnectionState(Enum):
    """Connection states"""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class MongoDBConfig:
    """MongoDB connection configuration"""
    uri: str
    database: str
    server_selection_timeout: int = 30000  # ms
    connect_timeout: int = 10000  # ms

    @classmethod
    def from_uri(cls, uri: str, **overrides) -> 'MongoDBConfig':
        database = unquote(urlparse(uri).path.lstrip('/'))
        if not database:
            raise ConnectionError(
                f"MongoDB URI must name a database: {mask_credentials(uri)}",
                {'uri': mask_credentials(uri)}
            )
        return cls(uri=uri, database=database, **overrides)


def infer_column_type(values: List[Any]) -> PortableType:
    """
    Portable type for the values seen under one document key.

    Uniform scalars keep a scalar type (ints and floats together widen to
    double precision); nested documents, arrays and mixed kinds become jsonb.
    """
    kinds = set()
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            kinds.add('bool')
        elif isinstance(value, int):
            kinds.add('int')
        elif isinstance(value, float):
            kinds.add('float')
        elif isinstance(value, (decimal.Decimal, Decimal128)):
            kinds.add('numeric')
        elif isinstance(value, datetime.datetime):
            kinds.add('datetime')
        elif isinstance(value, (str, ObjectId, uuid.UUID)):
            kinds.add('str')
        elif isinstance(value, bytes):
            kinds.add('bytes')
        else:
            kinds.add('json')

    if not kinds or kinds == {'str'}:
        return normalize('text')
    if kinds == {'int'}:
        return normalize('int8')
    if kinds <= {'int', 'float'}:
        return normalize('float8')
    if kinds <= {'int', 'numeric'}:
        return normalize('numeric')
    if kinds == {'bool'}:
        return normalize('bool')
    if kinds == {'datetime'}:
        return normalize('timestamp')
    if kinds == {'bytes'}:
        return normalize('bytea')
    return normalize('jsonb')


def to_plain(value: Any) -> Any:
    """BSON-specific values as plain Python values"""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value


def to_document_value(value: Any) -> Any:
    """Plain Python values as values the driver can encode"""
    if isinstance(value, decimal.Decimal):
        return Decimal128(value)
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    if isinstance(value, datetime.time):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, memoryview):
        return value.tobytes()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_document_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_document_value(v) for v in value]
    return value


def to_document_id(value: Any) -> Any:
    """Snapshot key as a document key; ObjectId hex text becomes an ObjectId"""
    if isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value):
        return ObjectId(value)
    return to_document_value(value)


def to_document(row: Row) -> Dict[str, Any]:
    document = {}
    if row.get(ID_FIELD) is not None:
        document[ID_FIELD] = to_document_id(row[ID_FIELD])
    document.update((k, to_document_value(v)) for k, v in row.items() if k != ID_FIELD)
    return document


def build_table(name: str, documents: List[Dict[str, Any]]) -> Table:
    """Table with one column per top-level key, in first-seen order"""
    keys: List[str] = [ID_FIELD]
    for document in documents:
        for key in document:
            if key not in keys:
                keys.append(key)

    plain = [{k: to_plain(v) for k, v in document.items()} for document in documents]

    columns = []
    for key in keys:
        if key == ID_FIELD:
            columns.append(Column(name=ID_FIELD, data_type=normalize('text'),
                                  nullable=False, is_primary_key=True))
            continue
        values = [document.get(key) for document in plain]
        columns.append(Column(name=key, data_type=infer_column_type(values)))

    rows: List[Row] = []
    for document in plain:
        row = {key: document.get(key) for key in keys}
        if row[ID_FIELD] is not None:
            row[ID_FIELD] = str(row[ID_FIELD])
        rows.append(row)

    return Table(name=name, columns=columns, rows=rows)


def build_indexes(collection_name: str, index_information: Dict[str, Dict[str, Any]]) -> List[Index]:
    """Single-field indexes from Collection.index_information()"""
    indexes = []
    for name, info in index_information.items():
        keys = info.get('key', [])
        if len(keys) != 1:
            logger.warning(f"Skipping compound index {collection_name}.{name}")
            continue
        field_name, direction = keys[0]
        if field_name == ID_FIELD:
            continue
        indexes.append(Index(
            name=name,
            table=collection_name,
            column=field_name,
            method='hash' if direction == pymongo.HASHED else 'btree',
            unique=bool(info.get('unique', False)),
        ))
    return indexes


class MongoDBAdapter(DatabaseAdapter):
    """MongoDB endpoint for a sync run"""

    name = "mongodb"

    def __init__(self, uri: str, observer: Optional[SyncObserver] = None, **options):
        super().__init__(uri, observer, **options)
        self.config = MongoDBConfig.from_uri(uri)
        self.state = ConnectionState.DISCONNECTED
        self.client = None
        self.db = None

    def connect(self) -> None:
        if self.client is not None:
            return

        try:
            self.client = pymongo.MongoClient(
                self.config.uri,
                serverSelectionTimeoutMS=self.config.server_selection_timeout,
                connectTimeoutMS=self.config.connect_timeout,
            )
            # Verify the server is reachable
            self.client.admin.command('ping')
        except PyMongoError as e:
            self.state = ConnectionState.ERROR
            if self.client is not None:
                self.client.close()
            self.client = None
            raise ConnectionError(
                f"Failed to connect to {self.safe_uri}: {mask_credentials(e)}",
                {'uri': self.safe_uri}
            ) from e

        self.db = self.client[self.config.database]
        self.state = ConnectionState.CONNECTED
        logger.info(f"Connected to MongoDB database {self.config.database}")

    def disconnect(self) -> None:
        if self.client is None:
            return
        try:
            self.client.close()
        except PyMongoError as e:
            raise ConnectionError(
                f"Failed to close connection to {self.safe_uri}: {mask_credentials(e)}",
                {'uri': self.safe_uri}
            ) from e
        finally:
            self.client = None
            self.db = None
            self.state = ConnectionState.DISCONNECTED

    def _require_db(self):
        if self.db is None:
            raise ConnectionError(f"Not connected to {self.safe_uri}", {'uri': self.safe_uri})
        return self.db

    def get_data(self, table_name: Optional[str] = None) -> DatabaseSnapshot:
        db = self._require_db()
        start_time = time.time()
        emit(self.observer, SyncPhase.INTROSPECT, "listing collections", entity=self.config.database)

        try:
            names = sorted(n for n in db.list_collection_names() if not n.startswith('system.'))
            if table_name is not None:
                if table_name not in names:
                    raise IntrospectionError(
                        f"Collection '{table_name}' not found in {self.config.database}",
                        {'phase': SyncPhase.INTROSPECT.value, 'table': table_name}
                    )
                names = [table_name]

            tables = []
            indexes = []
            for name in names:
                collection = db[name]
                documents = list(collection.find({}).sort(ID_FIELD, pymongo.ASCENDING))
                table = build_table(name, documents)
                tables.append(table)
                indexes.extend(i for i in build_indexes(name, collection.index_information())
                               if table.column(i.column) is not None)
                emit(self.observer, SyncPhase.FETCH_ROWS, "documents read",
                     entity=name, count=len(documents))

        except PyMongoError as e:
            raise IntrospectionError(
                f"Failed to read {self.config.database}: {e}",
                {'phase': SyncPhase.INTROSPECT.value}
            ) from e

        snapshot = DatabaseSnapshot(name=self.config.database, tables=tables, indexes=indexes,
                                    table_filter=table_name)
        logger.info(f"Captured {len(tables)} collections ({snapshot.row_count} documents) "
                    f"in {time.time() - start_time:.2f}s")
        return snapshot

    def insert_data(self, snapshot: DatabaseSnapshot) -> None:
        """Recreate each table as a collection. Not transactional."""
        db = self._require_db()

        for kind, entities in (('enums', snapshot.enums),
                               ('sequences', snapshot.sequences),
                               ('views', snapshot.views)):
            if entities:
                logger.warning(f"MongoDB has no counterpart for {kind}; "
                               f"skipping {len(entities)}")

        phase = SyncPhase.DROP_TABLES
        entity = None
        try:
            for table in order_tables(snapshot.tables):
                entity = table.name
                phase = SyncPhase.DROP_TABLES
                db.drop_collection(table.name)

                phase = SyncPhase.CREATE_TABLES
                db.create_collection(table.name)
                if table.rows:
                    documents = [to_document(row) for row in table.rows]
                    db[table.name].insert_many(documents, ordered=True)
                emit(self.observer, phase, "done", entity=table.name, count=len(table.rows))

            phase = SyncPhase.CREATE_INDEXES
            for index in snapshot.indexes:
                entity = index.name
                direction = pymongo.HASHED if index.method == 'hash' else pymongo.ASCENDING
                db[index.table].create_index([(index.column, direction)],
                                             name=index.name, unique=index.unique)
                emit(self.observer, phase, "done", entity=index.name)

        except PyMongoError as e:
            raise ReplicationError(
                f"{phase.value} failed on {entity}: {e}",
                phase=phase.value,
                entity=entity,
                details={'transactional': False}
            ) from e

        emit(self.observer, SyncPhase.COMMIT, "applied (non-transactional)",
             entity=self.config.database)
