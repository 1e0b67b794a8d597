from __future__ import annotations
from .errors import QueryError, tert, vert, tressa
from .evaluator import Evaluator
from .point import Point
from .tools import get_index_name
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional
import aiosqlite
import asyncio
import logging
import packify
import re


logger = logging.getLogger(__name__)

INDEX_TABLE = '_reqloquent_indexes'

_CLOSED = object()


def encode_value(value: Any) -> packify.SerializableType:
    """Convert a document value into packify-serializable form. Times
        and points become TIME and GEOMETRY pseudo-types.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {
            '$reql_type$': 'TIME',
            'epoch_time': value.timestamp(),
            'timezone': value.strftime('%z'),
        }
    if isinstance(value, Point):
        return value.to_reql()
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value

def decode_value(value: packify.SerializableType) -> Any:
    if isinstance(value, dict):
        kind = value.get('$reql_type$')
        if kind == 'TIME':
            tz = datetime.strptime(value['timezone'] or '+0000', '%z').tzinfo
            return datetime.fromtimestamp(value['epoch_time'], tz)
        if kind == 'GEOMETRY':
            return Point.parse(value)
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value

def pack_document(document: dict) -> bytes:
    return packify.pack(encode_value(document))

def unpack_document(blob: bytes) -> dict:
    return decode_value(packify.unpack(blob))


class Feed:
    """Live subscription to the changes of one table. Changes are
        queued as they are written; a document predicate limits them to
        the documents a query selects.
    """
    store: SqliteDocumentStore
    table: str
    matcher: Optional[Callable[[dict], Awaitable[bool]]]
    queue: asyncio.Queue
    closed: bool

    def __init__(self, store: SqliteDocumentStore, table: str,
                 matcher: Optional[Callable[[dict], Awaitable[bool]]] = None,
                 include_states: bool = False) -> None:
        self.store = store
        self.table = table
        self.matcher = matcher
        self.queue = asyncio.Queue()
        self.closed = False
        if include_states:
            self.queue.put_nowait({'state': 'ready'})

    def __repr__(self) -> str:
        return f'Feed(table={self.table!r}, closed={self.closed})'

    async def _selects(self, document: Optional[dict]) -> bool:
        if document is None:
            return False
        return self.matcher is None or await self.matcher(document)

    async def offer(self, old: Optional[dict], new: Optional[dict]) -> None:
        """Queue a change if either side is selected. A side that is not
            selected is reported as None.
        """
        if self.closed:
            return
        old_selected = await self._selects(old)
        new_selected = await self._selects(new)
        if not old_selected and not new_selected:
            return
        self.queue.put_nowait({
            'old_val': old if old_selected else None,
            'new_val': new if new_selected else None,
        })

    async def next(self) -> dict:
        """Wait for the next change. Raises StopAsyncIteration once the
            feed is closed and drained.
        """
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(_CLOSED)
        self.store._unsubscribe(self)

    def __aiter__(self) -> Feed:
        return self

    async def __anext__(self) -> dict:
        return await self.next()


class SqliteDocumentStore:
    """Document store on a single aiosqlite connection. Each table is a
        sqlite table of packify-packed (key, document) pairs; index
        definitions are kept in a metadata table and applied when
        queries are evaluated.
    """
    connection_info: str = ':memory:'
    connection: Optional[aiosqlite.Connection]
    tables: set[str]
    indexes: dict[str, dict[str, dict]]
    feeds: dict[str, list[Feed]]

    def __init__(self, connection_info: str = '') -> None:
        """Initialize the instance. Raises TypeError for non-str
            connection_info or UsageError for empty connection_info.
        """
        if not connection_info and hasattr(self, 'connection_info'):
            connection_info = self.connection_info
        tert(type(connection_info) is str, 'connection_info must be str')
        tressa(len(connection_info) > 0, 'cannot use with empty connection_info')
        self.connection_info = connection_info
        self.connection = None
        self.tables = set()
        self.indexes = {}
        self.feeds = {}

    def __repr__(self) -> str:
        return f'SqliteDocumentStore(connection_info={self.connection_info!r})'

    @staticmethod
    def _quote(name: str) -> str:
        """Raises ValueError for names that are not plain identifiers."""
        vert(type(name) is str and re.fullmatch(r'[A-Za-z0-9_]+', name) is not None,
            f'invalid table name {name!r}')
        vert(name != INDEX_TABLE, f'{INDEX_TABLE} is reserved')
        return f'"{name}"'

    def _require(self, table: str = None) -> None:
        tressa(self.connection is not None, 'store is not connected')
        if table is not None and table not in self.tables:
            raise QueryError(f'Table `{table}` does not exist.')

    async def connect(self) -> None:
        """Open the connection and load the table and index metadata."""
        if self.connection is not None:
            return
        self.connection = await aiosqlite.connect(self.connection_info)
        await self.connection.execute(
            f'CREATE TABLE IF NOT EXISTS {INDEX_TABLE} (table_name text, ' +
            'name text, spec blob, primary key (table_name, name))'
        )
        await self.connection.commit()

        async with self.connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ) as cursor:
            for (name,) in await cursor.fetchall():
                if name != INDEX_TABLE:
                    self.tables.add(name)
        async with self.connection.execute(
            f'SELECT table_name, name, spec FROM {INDEX_TABLE}'
        ) as cursor:
            for table, name, spec in await cursor.fetchall():
                self.indexes.setdefault(table, {})[name] = packify.unpack(spec)
        logger.debug('connected to %s with tables %s', self.connection_info, sorted(self.tables))

    async def close(self) -> None:
        """Close all feeds, then the connection."""
        for feeds in list(self.feeds.values()):
            for feed in list(feeds):
                feed.close()
        if self.connection is not None:
            await self.connection.close()
        self.connection = None
        self.tables = set()
        self.indexes = {}

    async def ensure_table(self, name: str) -> None:
        quoted = self._quote(name)
        self._require()
        if name in self.tables:
            return
        await self.connection.execute(
            f'CREATE TABLE IF NOT EXISTS {quoted} (key blob primary key, document blob)'
        )
        await self.connection.commit()
        self.tables.add(name)
        logger.debug('created table %s', name)

    async def drop_table(self, name: str) -> None:
        quoted = self._quote(name)
        self._require()
        await self.connection.execute(f'DROP TABLE IF EXISTS {quoted}')
        await self.connection.execute(
            f'DELETE FROM {INDEX_TABLE} WHERE table_name = ?', [name]
        )
        await self.connection.commit()
        self.tables.discard(name)
        self.indexes.pop(name, None)
        for feed in list(self.feeds.get(name, [])):
            feed.close()
        logger.debug('dropped table %s', name)

    async def table_list(self) -> list[str]:
        self._require()
        return sorted(self.tables)

    async def ensure_index(self, table: str, name: Optional[str] = None,
                           properties: tuple[str, ...] = (), multi: bool = False,
                           geo: bool = False) -> None:
        """Raises ValueError if a nested or compound index has no name."""
        name = get_index_name(list(properties), name)
        self._require(table)
        if name in self.indexes.get(table, {}):
            return
        spec = {'properties': list(properties), 'multi': multi, 'geo': geo}
        await self.connection.execute(
            f'INSERT INTO {INDEX_TABLE} (table_name, name, spec) VALUES (?, ?, ?)',
            [table, name, packify.pack(spec)]
        )
        await self.connection.commit()
        self.indexes.setdefault(table, {})[name] = spec
        logger.debug('created index %s on %s', name, table)

    def index_spec(self, table: str, name: str) -> dict:
        """Raises QueryError for an unknown index."""
        self._require(table)
        if name not in self.indexes.get(table, {}):
            raise QueryError(f'Index `{name}` was not found on table `{table}`.')
        return self.indexes[table][name]

    def index_list(self, table: str) -> list[str]:
        self._require(table)
        return list(self.indexes.get(table, {}))

    async def drop_index(self, table: str, name: str) -> None:
        self.index_spec(table, name)
        await self.connection.execute(
            f'DELETE FROM {INDEX_TABLE} WHERE table_name = ? AND name = ?', [table, name]
        )
        await self.connection.commit()
        del self.indexes[table][name]

    async def rename_index(self, table: str, old_name: str, new_name: str) -> None:
        spec = self.index_spec(table, old_name)
        await self.connection.execute(
            f'UPDATE {INDEX_TABLE} SET name = ? WHERE table_name = ? AND name = ?',
            [new_name, table, old_name]
        )
        await self.connection.commit()
        self.indexes[table][new_name] = spec
        del self.indexes[table][old_name]

    async def rows(self, table: str) -> list[dict]:
        """All documents of a table in insertion order."""
        quoted = self._quote(table)
        self._require(table)
        async with self.connection.execute(
            f'SELECT document FROM {quoted} ORDER BY rowid'
        ) as cursor:
            return [unpack_document(blob) for (blob,) in await cursor.fetchall()]

    async def get(self, table: str, key: Any) -> Optional[dict]:
        quoted = self._quote(table)
        self._require(table)
        async with self.connection.execute(
            f'SELECT document FROM {quoted} WHERE key = ?', [packify.pack(key)]
        ) as cursor:
            row = await cursor.fetchone()
        return None if row is None else unpack_document(row[0])

    async def write(self, table: str, key: Any, old: Optional[dict],
                    new: Optional[dict]) -> None:
        """Replace old with new: insert if old is None, delete if new is
            None. Feeds of the table are notified.
        """
        quoted = self._quote(table)
        self._require(table)
        packed_key = packify.pack(key)
        if new is None:
            await self.connection.execute(f'DELETE FROM {quoted} WHERE key = ?', [packed_key])
        elif old is None:
            await self.connection.execute(
                f'INSERT INTO {quoted} (key, document) VALUES (?, ?)',
                [packed_key, pack_document(new)]
            )
        else:
            await self.connection.execute(
                f'UPDATE {quoted} SET document = ? WHERE key = ?',
                [pack_document(new), packed_key]
            )
        await self.connection.commit()

        for feed in list(self.feeds.get(table, [])):
            await feed.offer(old, new)

    async def subscribe(self, table: str,
                        matcher: Optional[Callable[[dict], Awaitable[bool]]] = None,
                        include_states: bool = False) -> Feed:
        self._require(table)
        feed = Feed(self, table, matcher, include_states)
        self.feeds.setdefault(table, []).append(feed)
        logger.debug('subscribed to %s', table)
        return feed

    def _unsubscribe(self, feed: Feed) -> None:
        feeds = self.feeds.get(feed.table, [])
        if feed in feeds:
            feeds.remove(feed)

    async def execute(self, term: Any) -> Any:
        """Evaluate an expression tree. Raises QueryError if it fails."""
        self._require()
        return await Evaluator(self).run(term)
