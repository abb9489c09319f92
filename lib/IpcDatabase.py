"""
Database Shared State Store

Stores every key as one row of a SQLAlchemy table. Integer
values live in a numeric column so increments and decrements
are single atomic UPDATE statements; other values are stored
JSON encoded. Namespace locks are database transactions.

In production the table lives in MySQL (mysql+pymysql URL built
from the db configuration section); any SQLAlchemy URL works,
SQLite included.
"""

## version related
__author__ = "Kyle"
__version__ = "0.1.0"
__email__ = "kyle@hacking-linux.com"

## import builtin pkgs
import json
from contextlib import contextmanager
from sqlalchemy import Table, Column, MetaData, String, Text, BigInteger, create_engine, event, select, update, insert, delete
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.pool import NullPool

## import private pkgs
from Ipc import Ipc, MISSING

def _sqlite_connect(dbapi_connection, connection_record) -> None:
    ## let SQLAlchemy emit BEGIN itself, see _sqlite_begin
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA journal_mode = WAL')
    cursor.execute('PRAGMA busy_timeout = 5000')
    cursor.close()

def _sqlite_begin(connection) -> None:
    ## take the write lock up front so read-modify-write cycles serialize
    connection.exec_driver_sql('BEGIN IMMEDIATE')

class IpcDatabase(Ipc):
    """
    Table backed store.
    """

    kind = 'database'
    errors = (SQLAlchemyError, ValueError, TypeError)

    def __init__(self, logger: object, url: str, table: str = 'td_ipc') -> None:
        super().__init__(logger)
        self.url = url

        if url.startswith('sqlite'):
            self.engine = create_engine(url, poolclass = NullPool, connect_args = {'timeout': 5})
            event.listen(self.engine, 'connect', _sqlite_connect)
            event.listen(self.engine, 'begin', _sqlite_begin)

        else:
            self.engine = create_engine(url, pool_pre_ping = True)

        metadata = MetaData()
        self.table = Table(
            table,
            metadata,
            Column('key', String(191), primary_key = True),
            Column('number', BigInteger, nullable = True),
            Column('value', Text, nullable = True),
        )
        metadata.create_all(self.engine)

        ## connection of the transaction held by lock()
        self._conn = None
        self._depth = 0

    @contextmanager
    def _connection(self):
        if self._conn is not None:
            yield self._conn
            return

        with self.engine.begin() as conn:
            yield conn

    @staticmethod
    def _decode(row):
        if row is None:
            return MISSING

        if row[0] is not None:
            return int(row[0])

        return json.loads(row[1])

    @staticmethod
    def _encode(value) -> dict:
        ## bool is an int subclass but is stored as JSON
        if isinstance(value, int) and not isinstance(value, bool):
            return {'number': value, 'value': None}

        return {'number': None, 'value': json.dumps(value)}

    def _select(self, conn, key, for_update = False):
        query = select(self.table.c.number, self.table.c.value).where(self.table.c.key == key)
        if for_update:
            query = query.with_for_update()

        return conn.execute(query).first()

    def _read(self, key):
        with self._connection() as conn:
            return self._decode(self._select(conn, key))

    def _write(self, key, value):
        with self._connection() as conn:
            row = self._encode(value)
            result = conn.execute(update(self.table).where(self.table.c.key == key).values(**row))
            if result.rowcount == 0:
                conn.execute(insert(self.table).values(key = key, **row))

    def _update(self, key, func):
        with self._connection() as conn:
            current = self._decode(self._select(conn, key, for_update = True))
            value = func(current)
            if value is MISSING:
                return value

            row = self._encode(value)
            if current is MISSING:
                conn.execute(insert(self.table).values(key = key, **row))

            else:
                conn.execute(update(self.table).where(self.table.c.key == key).values(**row))

            return value

    def increment(self, key: str, count: int = 1) -> int | None:
        """
        Atomic SQL increment, creating the key when absent.
        """

        column = self.table.c.number
        statement = update(self.table).where(self.table.c.key == key, column.isnot(None)).values(number = column + count)

        def add():
            with self._connection() as conn:
                if conn.execute(statement).rowcount == 0:
                    try:
                        with conn.begin_nested():
                            conn.execute(insert(self.table).values(key = key, number = count, value = None))

                    except IntegrityError:
                        ## created concurrently between UPDATE and INSERT
                        conn.execute(statement)

                return int(self._select(conn, key)[0])

        return self._tolerate(key, add, None)

    def decrement(self, key: str, count: int = 1) -> bool:
        """
        Atomic SQL decrement; missing keys and values below count
        are left untouched.
        """

        def sub():
            with self._connection() as conn:
                column = self.table.c.number
                result = conn.execute(
                    update(self.table)
                    .where(self.table.c.key == key, column > 0, column >= count)
                    .values(number = column - count)
                )
                return result.rowcount == 1

        return self._tolerate(key, sub, False)

    def _delete(self, key):
        with self._connection() as conn:
            result = conn.execute(delete(self.table).where(self.table.c.key == key))
            return result.rowcount > 0

    def _keys(self):
        with self._connection() as conn:
            return sorted(conn.execute(select(self.table.c.key)).scalars())

    @contextmanager
    def lock(self, id):
        if self._conn is not None:
            self._depth += 1
            try:
                yield self

            finally:
                self._depth -= 1

            return

        with self.engine.begin() as conn:
            self._conn = conn
            try:
                yield self

            finally:
                self._conn = None

    def after_fork(self) -> None:
        ## pooled connections belong to the parent process
        self._conn = None
        self.engine.dispose(close = False)

    def close(self) -> None:
        self.engine.dispose()
