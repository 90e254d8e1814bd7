#!/usr/bin/env python3
"""
PostgreSQL round-trip tests against two live databases.

Requires:
- DBREPLICA_TEST_SOURCE_URL: scratch database seeded by these tests
- DBREPLICA_TEST_DEST_URL: scratch database overwritten by these tests

Both schemas are dropped and recreated; never point these at real data.

Run tests:
    DBREPLICA_TEST_SOURCE_URL=postgresql://... DBREPLICA_TEST_DEST_URL=postgresql://... \
        pytest tests/integration/test_postgresql_roundtrip.py -v
"""

import os
from decimal import Decimal

import psycopg2
import pytest

from core.errors import ReplicationError
from core.replicator import ReplicationState, Replicator
from extensions.plugins.postgresql_adapter import PostgreSQLAdapter

SOURCE_URL = os.environ.get('DBREPLICA_TEST_SOURCE_URL')
DEST_URL = os.environ.get('DBREPLICA_TEST_DEST_URL')

pytestmark = pytest.mark.skipif(
    not (SOURCE_URL and DEST_URL),
    reason="DBREPLICA_TEST_SOURCE_URL and DBREPLICA_TEST_DEST_URL not set"
)

SEED_SQL = """
DROP SCHEMA public CASCADE;
CREATE SCHEMA public;
CREATE TYPE order_status AS ENUM ('pending', 'shipped', 'cancelled');
CREATE TABLE users (
    id serial PRIMARY KEY,
    email varchar(120) NOT NULL UNIQUE,
    profile jsonb,
    tags text[]
);
CREATE TABLE orders (
    id bigint PRIMARY KEY,
    user_id integer NOT NULL REFERENCES users(id),
    status order_status NOT NULL DEFAULT 'pending',
    total numeric(10,2),
    placed_at timestamp
);
CREATE INDEX orders_status_idx ON orders (status);
INSERT INTO users (email, profile, tags) VALUES
    ('ada@example.com', '{"admin": true}', ARRAY['ops', 'billing']),
    ('o''brien@example.com', NULL, NULL);
INSERT INTO orders VALUES
    (10, 1, 'shipped', 19.99, '2024-05-01 10:30:00'),
    (11, 2, 'pending', NULL, NULL);
CREATE VIEW shipped_orders AS SELECT id, total FROM orders WHERE status = 'shipped';
CREATE VIEW big_shipped_orders AS SELECT id FROM shipped_orders WHERE total > 10;
"""


def execute(url, sql, fetch=False):
    connection = psycopg2.connect(url)
    try:
        with connection.cursor() as cursor:
            cursor.execute(sql)
            rows = cursor.fetchall() if fetch else None
        connection.commit()
        return rows
    finally:
        connection.close()


@pytest.fixture
def settings(sync_settings):
    sync_settings.apply_workers = 2
    return sync_settings


@pytest.fixture
def seeded():
    execute(SOURCE_URL, SEED_SQL)
    execute(DEST_URL, "DROP SCHEMA public CASCADE; CREATE SCHEMA public;")


def sync(settings, table_name=None, **options):
    source = PostgreSQLAdapter(SOURCE_URL, settings=settings)
    destination = PostgreSQLAdapter(DEST_URL, settings=settings, **options)
    return Replicator(source, destination).run(table_name=table_name)


class TestRoundTrip:

    def test_full_sync(self, seeded, settings):
        result = sync(settings)

        assert result.state == ReplicationState.COMMITTED
        assert (result.tables, result.rows, result.views) == (2, 4, 2)

        rows = execute(DEST_URL, "SELECT id, email, profile, tags FROM users ORDER BY id", fetch=True)
        assert rows == [
            (1, 'ada@example.com', {'admin': True}, ['ops', 'billing']),
            (2, "o'brien@example.com", None, None),
        ]
        orders = execute(DEST_URL, "SELECT id, status::text, total FROM orders ORDER BY id", fetch=True)
        assert orders == [(10, 'shipped', Decimal('19.99')), (11, 'pending', None)]
        assert execute(DEST_URL, "SELECT id FROM big_shipped_orders", fetch=True) == [(10,)]

    def test_sequence_continues_after_sync(self, seeded, settings):
        sync(settings)
        rows = execute(DEST_URL, "INSERT INTO users (email) VALUES ('new@example.com') RETURNING id",
                       fetch=True)
        assert rows == [(3,)]

    def test_repeated_sync_is_idempotent(self, seeded, settings):
        sync(settings)
        sync(settings)

        counts = execute(DEST_URL, "SELECT (SELECT count(*) FROM users), (SELECT count(*) FROM orders)",
                         fetch=True)
        assert counts == [(2, 2)]

    def test_single_table(self, seeded, settings):
        result = sync(settings, table_name='users')

        assert result.tables == 1
        tables = execute(DEST_URL, "SELECT table_name FROM information_schema.tables "
                                   "WHERE table_schema = 'public' ORDER BY table_name", fetch=True)
        assert tables == [('users',)]


class TestAtomicity:

    def test_failed_apply_leaves_destination_untouched(self, seeded, settings):
        execute(DEST_URL, "CREATE TABLE marker (id int); INSERT INTO marker VALUES (1);")

        source = PostgreSQLAdapter(SOURCE_URL, settings=settings)
        destination = PostgreSQLAdapter(DEST_URL, settings=settings)
        apply = destination.insert_data

        def insert_data(snapshot):
            # Views are applied last; this one cannot be created
            snapshot.views[-1].definition = " SELECT missing_column FROM users;"
            return apply(snapshot)
        destination.insert_data = insert_data

        replicator = Replicator(source, destination)
        with pytest.raises(ReplicationError) as exc:
            replicator.run()

        assert exc.value.phase == 'create_views'
        assert replicator.state == ReplicationState.ROLLED_BACK
        assert execute(DEST_URL, "SELECT id FROM marker", fetch=True) == [(1,)]
        assert execute(DEST_URL, "SELECT to_regclass('public.users')", fetch=True) == [(None,)]


class TestSharedNames:

    def test_foreign_keys_with_same_name(self, seeded, settings):
        execute(SOURCE_URL, """
            CREATE TABLE accounts (id integer PRIMARY KEY);
            CREATE TABLE a (id integer PRIMARY KEY,
                            user_id integer CONSTRAINT fk_ref REFERENCES users(id));
            CREATE TABLE b (id integer PRIMARY KEY,
                            acct_id integer CONSTRAINT fk_ref REFERENCES accounts(id));
        """)

        source = PostgreSQLAdapter(SOURCE_URL, settings=settings)
        with source:
            snapshot = source.get_data()

        assert snapshot.table('a').column('user_id').foreign_key.table == 'users'
        assert snapshot.table('b').column('acct_id').foreign_key.table == 'accounts'

    def test_single_table_resync_keeps_shared_enum(self, seeded, settings):
        execute(SOURCE_URL, "CREATE TABLE returns (id integer PRIMARY KEY, "
                            "status order_status NOT NULL);")
        sync(settings)

        result = sync(settings, table_name='orders')

        assert result.state == ReplicationState.COMMITTED
        labels = execute(DEST_URL, "SELECT enum_range(NULL::order_status)::text", fetch=True)
        assert labels == [('{pending,shipped,cancelled}',)]
        assert execute(DEST_URL, "SELECT to_regclass('public.returns') IS NOT NULL",
                       fetch=True) == [(True,)]
