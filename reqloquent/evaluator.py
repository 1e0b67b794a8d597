"""
    Interpreter for expression trees built with `reqloquent.terms`,
    executed against the documents of a `SqliteDocumentStore`.

    Tables, selections of table documents, and single selections are
    kept as references while the tree is evaluated so that writes can
    follow them; they are materialized into documents and lists before
    the result is returned. Reading a missing field, an out of bounds
    index, or reducing an empty sequence raises NonExistenceError,
    which `default()` and `filter()` catch. Any other failure raises
    QueryError.
"""

from __future__ import annotations
from .errors import NonExistenceError, QueryError
from .namespace import coerce_datetime
from .point import Point
from .shapes import Op
from .terms import Func, Term, Var
from .tools import _get_path
from datetime import datetime, timedelta, timezone
from math import ceil, floor
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional
from uuid import uuid4
import json
import random
import re

if TYPE_CHECKING:
    from .store import SqliteDocumentStore


class DbRef:
    def __init__(self, name: str) -> None:
        self.name = name


class TableRef:
    def __init__(self, name: str) -> None:
        self.name = name


class Selection:
    """Documents selected from a table."""
    def __init__(self, table: str, documents: list[dict]) -> None:
        self.table = table
        self.documents = documents


class SingleSelection:
    """One document, or None, selected from a table by key."""
    def __init__(self, table: str, key: Any, document: Optional[dict]) -> None:
        self.table = table
        self.key = key
        self.document = document


class Ordering:
    def __init__(self, key: Any, descending: bool = False) -> None:
        self.key = key
        self.descending = descending


class Grouped:
    """Groups as (key, value) pairs in order of first appearance."""
    def __init__(self, groups: list[tuple[Any, Any]]) -> None:
        self.groups = groups


# ops whose receiver and arguments are evaluated by the handler
LAZY_OPS = frozenset({Op.BRANCH, Op.AND, Op.OR, Op.DEFAULT, Op.CHANGES})

# ops applied to each element when the receiver is a sequence
ELEMENT_OPS = frozenset({Op.PLUCK, Op.WITHOUT, Op.MERGE})

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def type_name(value: Any) -> str:
    if isinstance(value, TableRef):
        return 'TABLE'
    if isinstance(value, Selection):
        return 'SELECTION<STREAM>'
    if isinstance(value, SingleSelection):
        return 'SELECTION<OBJECT>'
    if isinstance(value, Grouped):
        return 'GROUPED_STREAM'
    if isinstance(value, DbRef):
        return 'DB'
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return 'BOOL'
    if isinstance(value, (int, float)):
        return 'NUMBER'
    if isinstance(value, str):
        return 'STRING'
    if isinstance(value, list):
        return 'ARRAY'
    if isinstance(value, dict):
        return 'OBJECT'
    if isinstance(value, datetime):
        return 'PTYPE<TIME>'
    if isinstance(value, Point):
        return 'PTYPE<GEOMETRY>'
    if isinstance(value, Func):
        return 'FUNCTION'
    return type(value).__name__.upper()

def sort_key(value: Any) -> tuple:
    """Total order over values: arrays, booleans, null, numbers,
        objects, points, strings, then times.
    """
    if isinstance(value, list):
        return (0, [sort_key(v) for v in value])
    if isinstance(value, bool):
        return (1, value)
    if value is None:
        return (2, 0)
    if isinstance(value, (int, float)):
        return (3, value)
    if isinstance(value, dict):
        return (4, sorted([(k, sort_key(v)) for k, v in value.items()]))
    if isinstance(value, Point):
        return (5, (value.longitude, value.latitude))
    if isinstance(value, str):
        return (6, value)
    if isinstance(value, datetime):
        return (7, value.timestamp())
    raise QueryError(f'cannot compare value of type {type_name(value)}')

def truthy(value: Any) -> bool:
    return value is not False and value is not None

def json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Point):
        return value.to_geojson()
    raise TypeError(f'{type_name(value)} is not JSON serializable')

def deep_merge(base: Any, other: Any) -> Any:
    if not isinstance(base, dict) or not isinstance(other, dict):
        return other
    merged = dict(base)
    for key, value in other.items():
        merged[key] = deep_merge(merged[key], value) if key in merged else value
    return merged

def pluck(document: dict, fields: list) -> dict:
    if not isinstance(document, dict):
        raise QueryError(f'cannot pluck from {type_name(document)}')
    plucked = {}
    for field in fields:
        if isinstance(field, str):
            if field in document:
                plucked[field] = document[field]
        elif isinstance(field, list):
            plucked.update(pluck(document, field))
        elif isinstance(field, dict):
            for key, nested in field.items():
                if key not in document:
                    continue
                value = document[key]
                if nested is True:
                    plucked[key] = value
                    continue
                nested = nested if isinstance(nested, list) else [nested]
                if isinstance(value, list):
                    plucked[key] = [pluck(v, nested) for v in value if isinstance(v, dict)]
                elif isinstance(value, dict):
                    plucked[key] = pluck(value, nested)
        else:
            raise QueryError(f'invalid pluck selector {field!r}')
    return plucked

def without(document: dict, fields: list) -> dict:
    if not isinstance(document, dict):
        raise QueryError(f'cannot apply without to {type_name(document)}')
    remaining = dict(document)
    for field in fields:
        if isinstance(field, str):
            remaining.pop(field, None)
        elif isinstance(field, list):
            remaining = without(remaining, field)
        elif isinstance(field, dict):
            for key, nested in field.items():
                if nested is True:
                    remaining.pop(key, None)
                elif isinstance(remaining.get(key), dict):
                    nested = nested if isinstance(nested, list) else [nested]
                    remaining[key] = without(remaining[key], nested)
    return remaining

def matches_subset(expected: dict, document: Any) -> bool:
    """Raises NonExistenceError if the document lacks an expected
        field.
    """
    if not isinstance(document, dict):
        raise NonExistenceError(f'cannot filter {type_name(document)} by object')
    for key, value in expected.items():
        if key not in document:
            raise NonExistenceError(f'No attribute `{key}` in object')
        if isinstance(value, dict) and isinstance(document[key], dict):
            if not matches_subset(value, document[key]):
                return False
        elif document[key] != value:
            return False
    return True

def in_bounds(value: Any, lower: Any, upper: Any, left: str, right: str) -> bool:
    key = sort_key(value)
    low, high = sort_key(lower), sort_key(upper)
    above = key >= low if left == 'closed' else key > low
    below = key <= high if right == 'closed' else key < high
    return above and below


def _ack() -> dict:
    return {
        'inserted': 0,
        'replaced': 0,
        'unchanged': 0,
        'errors': 0,
        'deleted': 0,
        'skipped': 0,
    }

def _record_error(ack: dict, message: str) -> None:
    ack['errors'] += 1
    ack.setdefault('first_error', message)


class Evaluator:
    """Evaluates one expression tree against a store."""
    store: SqliteDocumentStore

    def __init__(self, store: SqliteDocumentStore) -> None:
        self.store = store

    async def run(self, term: Any) -> Any:
        return await self.materialize(await self.evaluate(term, {}))

    async def materialize(self, value: Any) -> Any:
        """Turn references into documents and lists."""
        if isinstance(value, TableRef):
            return await self.store.rows(value.name)
        if isinstance(value, Selection):
            return list(value.documents)
        if isinstance(value, SingleSelection):
            return value.document
        if isinstance(value, Grouped):
            return await self._ungroup(value, [], {}, {})
        if isinstance(value, DbRef):
            return {'name': value.name, 'type': 'DB'}
        if isinstance(value, dict):
            return {k: await self.materialize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [await self.materialize(v) for v in value]
        return value

    async def evaluate(self, value: Any, env: dict) -> Any:
        if isinstance(value, Var):
            if value.var_id not in env:
                raise QueryError(f'unbound variable var_{value.var_id}')
            return env[value.var_id]
        if isinstance(value, Term):
            return await self.apply(value, env)
        if isinstance(value, dict):
            return {
                k: await self.materialize(await self.evaluate(v, env))
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [await self.materialize(await self.evaluate(v, env)) for v in value]
        return value

    async def apply(self, term: Term, env: dict) -> Any:
        op = term.op
        handler = getattr(self, f'_{op.value}')
        if op in LAZY_OPS:
            return await handler(term, env)

        receiver = None
        if term.receiver is not None:
            receiver = await self.evaluate(term.receiver, env)
        args = [await self.evaluate(arg, env) for arg in term.args]
        optargs = {k: await self.evaluate(v, env) for k, v in term.optargs.items()}

        try:
            if isinstance(receiver, Grouped) and op is not Op.UNGROUP:
                return Grouped([
                    (key, await handler(items, args, optargs, env))
                    for key, items in receiver.groups
                ])
            if op in ELEMENT_OPS and isinstance(receiver, (TableRef, Selection, list)):
                return [
                    await handler(item, args, optargs, env)
                    for item in await self.sequence(receiver)
                ]
            return await handler(receiver, args, optargs, env)
        except (QueryError, NonExistenceError):
            raise
        except (TypeError, ValueError, KeyError, IndexError, ZeroDivisionError,
                AttributeError, OverflowError) as e:
            raise QueryError(f'{op.value}: {e}') from e

    async def call(self, function: Any, env: dict, *values: Any) -> Any:
        """Call a Func with the values bound to its parameters. Any
            other value is returned as a constant.
        """
        if not isinstance(function, Func):
            return function
        if len(function.params) != len(values):
            raise QueryError(
                f'function expects {len(function.params)} arguments but got {len(values)}'
            )
        scope = {**env, **dict(zip(function.params, values))}
        return await self.deref(await self.evaluate(function.body, scope))

    async def deref(self, value: Any) -> Any:
        if isinstance(value, SingleSelection):
            return value.document
        return value

    async def sequence(self, value: Any) -> list:
        value = await self.deref(value)
        if isinstance(value, TableRef):
            return await self.store.rows(value.name)
        if isinstance(value, Selection):
            return list(value.documents)
        if isinstance(value, (list, tuple)):
            return list(value)
        if value is None:
            raise NonExistenceError('expected type SEQUENCE but found NULL')
        raise QueryError(f'expected type SEQUENCE but found {type_name(value)}')

    def reselect(self, receiver: Any, documents: list) -> Selection|list:
        """Keep table documents addressable for writes."""
        if isinstance(receiver, TableRef):
            return Selection(receiver.name, documents)
        if isinstance(receiver, Selection):
            return Selection(receiver.table, documents)
        return documents

    def table_of(self, receiver: Any) -> str:
        if isinstance(receiver, TableRef):
            return receiver.name
        if isinstance(receiver, (Selection, SingleSelection)):
            return receiver.table
        raise QueryError(f'expected a table but found {type_name(receiver)}')

    def index_values(self, document: dict, table: str, index: str) -> list:
        """The keys a document has in an index. Missing and null values
            are not indexed.
        """
        if index == 'id':
            return [] if document.get('id') is None else [document['id']]
        spec = self.store.index_spec(table, index)
        properties = spec['properties']
        try:
            if len(properties) == 1:
                value = _get_path(document, properties[0])
            else:
                value = [_get_path(document, p) for p in properties]
        except KeyError:
            return []
        if value is None:
            return []
        if spec['multi'] and isinstance(value, list):
            return [v for v in value if v is not None]
        return [value]

    async def matches(self, predicate: Any, document: Any, default: Any, env: dict) -> bool:
        try:
            if isinstance(predicate, Func):
                return truthy(await self.call(predicate, env, document))
            if isinstance(predicate, dict):
                return matches_subset(predicate, document)
            return truthy(predicate)
        except NonExistenceError as e:
            return truthy(await self.call(default, env, str(e)))

    async def _field_of(self, selector: Any, item: Any, env: dict) -> Any:
        """Read a field by name or call a function. Raises
            NonExistenceError for a missing field.
        """
        if isinstance(selector, Func):
            return await self.call(selector, env, item)
        if not isinstance(item, dict) or selector not in item:
            raise NonExistenceError(f'No attribute `{selector}` in object')
        return item[selector]

    async def _selected(self, selector: Any, items: list, env: dict) -> list[tuple[Any, Any]]:
        """(value, item) pairs for the items having the selected field."""
        pairs = []
        for item in items:
            if selector is None:
                pairs.append((item, item))
                continue
            try:
                pairs.append((await self._field_of(selector, item, env), item))
            except NonExistenceError:
                continue
        return pairs

    # root
    async def _db(self, receiver, args, optargs, env):
        return DbRef(args[0])

    async def _table(self, receiver, args, optargs, env):
        if args[0] not in await self.store.table_list():
            raise QueryError(f'Table `{args[0]}` does not exist.')
        return TableRef(args[0])

    async def _table_create(self, receiver, args, optargs, env):
        if args[0] in await self.store.table_list():
            raise QueryError(f'Table `{args[0]}` already exists.')
        await self.store.ensure_table(args[0])
        return {'tables_created': 1}

    async def _table_drop(self, receiver, args, optargs, env):
        if args[0] not in await self.store.table_list():
            raise QueryError(f'Table `{args[0]}` does not exist.')
        await self.store.drop_table(args[0])
        return {'tables_dropped': 1}

    async def _table_list(self, receiver, args, optargs, env):
        return await self.store.table_list()

    async def _expr(self, receiver, args, optargs, env):
        return args[0]

    async def _branch(self, term: Term, env: dict) -> Any:
        args = list(term.args)
        if len(args) < 3 or len(args) % 2 == 0:
            raise QueryError('branch takes test, value pairs and a final value')
        while len(args) > 1:
            test, value = args[0], args[1]
            if truthy(await self.deref(await self.evaluate(test, env))):
                return await self.evaluate(value, env)
            args = args[2:]
        return await self.evaluate(args[0], env)

    async def _uuid(self, receiver, args, optargs, env):
        return str(uuid4())

    async def _now(self, receiver, args, optargs, env):
        return datetime.now(timezone.utc)

    async def _point(self, receiver, args, optargs, env):
        return Point(args[0], args[1])

    async def _error(self, receiver, args, optargs, env):
        raise QueryError(args[0])

    async def _asc(self, receiver, args, optargs, env):
        return Ordering(args[0])

    async def _desc(self, receiver, args, optargs, env):
        return Ordering(args[0], descending=True)

    async def _range(self, receiver, args, optargs, env):
        return list(range(*args))

    async def _iso8601(self, receiver, args, optargs, env):
        return coerce_datetime(args[0])

    async def _epoch_time(self, receiver, args, optargs, env):
        return datetime.fromtimestamp(args[0], timezone.utc)

    async def _object(self, receiver, args, optargs, env):
        if len(args) % 2:
            raise QueryError('object takes key, value pairs')
        return {args[i]: args[i+1] for i in range(0, len(args), 2)}

    # table administration
    async def _index_create(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        name = args[0]
        properties = [name] if len(args) == 1 else args[1]
        if isinstance(properties, str):
            properties = [properties]
        if not isinstance(properties, list) or not all([type(p) is str for p in properties]):
            raise QueryError('index_create accepts property names, not functions')
        if name in self.store.index_list(table):
            raise QueryError(f'Index `{name}` already exists on table `{table}`.')
        await self.store.ensure_index(
            table, name, tuple(properties),
            bool(optargs.get('multi')), bool(optargs.get('geo')),
        )
        return {'created': 1}

    async def _index_drop(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        self.store.index_spec(table, args[0])
        await self.store.drop_index(table, args[0])
        return {'dropped': 1}

    async def _index_list(self, receiver, args, optargs, env):
        return self.store.index_list(self.table_of(receiver))

    async def _index_rename(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        self.store.index_spec(table, args[0])
        if args[1] in self.store.index_list(table):
            raise QueryError(f'Index `{args[1]}` already exists on table `{table}`.')
        await self.store.rename_index(table, args[0], args[1])
        return {'renamed': 1}

    async def _index_status(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        names = args or self.store.index_list(table)
        statuses = []
        for name in names:
            spec = self.store.index_spec(table, name)
            statuses.append({
                'index': name,
                'ready': True,
                'multi': spec['multi'],
                'geo': spec['geo'],
                'properties': list(spec['properties']),
            })
        return statuses

    async def _index_wait(self, receiver, args, optargs, env):
        return await self._index_status(receiver, args, optargs, env)

    async def _sync(self, receiver, args, optargs, env):
        self.table_of(receiver)
        return {'synced': 1}

    async def _wait(self, receiver, args, optargs, env):
        return {'ready': 1}

    # writes
    async def _insert(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        documents = args[0] if isinstance(args[0], list) else [args[0]]
        conflict = optargs.get('conflict', 'error')
        ack, changes, generated = _ack(), [], []

        for document in documents:
            if not isinstance(document, dict):
                _record_error(ack, f'Expected type OBJECT but found {type_name(document)}.')
                continue
            document = dict(document)
            if document.get('id') is None:
                document['id'] = str(uuid4())
                generated.append(document['id'])

            old = await self.store.get(table, document['id'])
            if old is None:
                await self.store.write(table, document['id'], None, document)
                ack['inserted'] += 1
                changes.append({'old_val': None, 'new_val': document})
                continue

            if conflict == 'error':
                _record_error(ack, f'Duplicate primary key `id`: {document["id"]!r}')
                continue
            new = {**old, **document} if conflict == 'update' else document
            if new == old:
                ack['unchanged'] += 1
                continue
            await self.store.write(table, document['id'], old, new)
            ack['replaced'] += 1
            changes.append({'old_val': old, 'new_val': new})

        if generated:
            ack['generated_keys'] = generated
        if optargs.get('return_changes'):
            ack['changes'] = changes
        return ack

    async def _targets(self, receiver: Any) -> list[tuple[str, Any, Optional[dict]]]:
        if isinstance(receiver, SingleSelection):
            return [(receiver.table, receiver.key, receiver.document)]
        table = self.table_of(receiver)
        return [(table, doc.get('id'), doc) for doc in await self.sequence(receiver)]

    async def _write_each(self, receiver: Any, change: Callable[[dict], Awaitable[Any]],
                          optargs: dict) -> dict:
        """Apply change to each selected document and write the result.
            A result of None deletes the document.
        """
        ack, changes = _ack(), []
        for table, key, old in await self._targets(receiver):
            new = await change(old)
            if old is None and new is None:
                ack['skipped'] += 1
                continue
            if new is not None:
                if not isinstance(new, dict):
                    _record_error(ack, f'Expected type OBJECT but found {type_name(new)}.')
                    continue
                if new.get('id') != key:
                    _record_error(ack, 'Primary key `id` cannot be changed.')
                    continue
            if new == old:
                ack['unchanged'] += 1
                continue

            await self.store.write(table, key, old, new)
            if new is None:
                ack['deleted'] += 1
            elif old is None:
                ack['inserted'] += 1
            else:
                ack['replaced'] += 1
            changes.append({'old_val': old, 'new_val': new})

        if optargs.get('return_changes'):
            ack['changes'] = changes
        return ack

    async def _update(self, receiver, args, optargs, env):
        async def change(old):
            if old is None:
                return None
            patch = await self.call(args[0], env, old)
            if patch is None:
                return old
            if not isinstance(patch, dict):
                raise QueryError(f'update expects OBJECT but found {type_name(patch)}')
            return {**old, **patch}
        return await self._write_each(receiver, change, optargs)

    async def _replace(self, receiver, args, optargs, env):
        async def change(old):
            return await self.call(args[0], env, old)
        return await self._write_each(receiver, change, optargs)

    async def _delete(self, receiver, args, optargs, env):
        async def change(old):
            return None
        return await self._write_each(receiver, change, optargs)

    # selecting
    async def _get(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        return SingleSelection(table, args[0], await self.store.get(table, args[0]))

    async def _get_all(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        index = optargs.get('index', 'id')
        keys = [k for k in args if k is not None]
        if index == 'id':
            documents = []
            for key in keys:
                document = await self.store.get(table, key)
                if document is not None and document not in documents:
                    documents.append(document)
            return Selection(table, documents)

        self.store.index_spec(table, index)
        return Selection(table, [
            doc for doc in await self.store.rows(table)
            if any([value in keys for value in self.index_values(doc, table, index)])
        ])

    async def _between(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        index = optargs.get('index', 'id')
        left = optargs.get('left_bound', 'closed')
        right = optargs.get('right_bound', 'open')
        return Selection(table, [
            doc for doc in await self.store.rows(table)
            if any([
                in_bounds(value, args[0], args[1], left, right)
                for value in self.index_values(doc, table, index)
            ])
        ])

    async def _get_nearest(self, receiver, args, optargs, env):
        table = self.table_of(receiver)
        index = optargs['index']
        if not self.store.index_spec(table, index)['geo']:
            raise QueryError(f'Index `{index}` is not a geospatial index.')
        origin = Point.parse(args[0])
        max_dist = optargs.get('max_dist', 100000)
        found = []
        for doc in await self.store.rows(table):
            distances = [
                origin.distance(Point.parse(value))
                for value in self.index_values(doc, table, index)
            ]
            if distances and min(distances) <= max_dist:
                found.append({'dist': min(distances), 'doc': doc})
        found.sort(key=lambda item: item['dist'])
        return found[:optargs.get('max_results', 100)]

    # sequences
    async def _filter(self, receiver, args, optargs, env):
        default = optargs.get('default', False)
        return self.reselect(receiver, [
            item for item in await self.sequence(receiver)
            if await self.matches(args[0], item, default, env)
        ])

    async def _map(self, receiver, args, optargs, env):
        return [await self.call(args[0], env, item) for item in await self.sequence(receiver)]

    async def _concat_map(self, receiver, args, optargs, env):
        result = []
        for item in await self.sequence(receiver):
            result.extend(await self.sequence(await self.call(args[0], env, item)))
        return result

    async def _with_fields(self, receiver, args, optargs, env):
        return [
            pluck(item, args) for item in await self.sequence(receiver)
            if isinstance(item, dict) and all([item.get(f) is not None for f in args])
        ]

    async def _order_by(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        keys = [a if isinstance(a, Ordering) else Ordering(a) for a in args]
        index = optargs.get('index')
        if index is not None:
            index = index if isinstance(index, Ordering) else Ordering(index)
            table = self.table_of(receiver)
            keys.insert(0, Ordering(
                lambda doc: (self.index_values(doc, table, index.key) or [None])[0],
                index.descending,
            ))

        rows = []
        for item in items:
            values = []
            for ordering in keys:
                if callable(ordering.key) and not isinstance(ordering.key, Func):
                    value = ordering.key(item)
                else:
                    try:
                        value = await self._field_of(ordering.key, item, env)
                    except NonExistenceError:
                        value = None
                values.append(sort_key(value))
            rows.append((values, item))

        for position in reversed(range(len(keys))):
            rows.sort(key=lambda row: row[0][position], reverse=keys[position].descending)
        return self.reselect(receiver, [item for _, item in rows])

    async def _skip(self, receiver, args, optargs, env):
        return self.reselect(receiver, (await self.sequence(receiver))[args[0]:])

    async def _limit(self, receiver, args, optargs, env):
        return self.reselect(receiver, (await self.sequence(receiver))[:args[0]])

    async def _slice(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        end = args[1] if len(args) > 1 else len(items)
        return self.reselect(receiver, items[args[0]:end])

    async def _nth(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        if not -len(items) <= args[0] < len(items):
            raise NonExistenceError(f'Index out of bounds: {args[0]}')
        item = items[args[0]]
        if isinstance(receiver, (TableRef, Selection)):
            return SingleSelection(self.table_of(receiver), item.get('id'), item)
        return item

    async def _offsets_of(self, receiver, args, optargs, env):
        offsets = []
        for position, item in enumerate(await self.sequence(receiver)):
            if isinstance(args[0], Func):
                if truthy(await self.call(args[0], env, item)):
                    offsets.append(position)
            elif item == args[0]:
                offsets.append(position)
        return offsets

    async def _is_empty(self, receiver, args, optargs, env):
        return len(await self.sequence(receiver)) == 0

    async def _union(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        for other in args:
            items.extend(await self.sequence(other))
        return items

    async def _sample(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        return self.reselect(receiver, random.sample(items, min(args[0], len(items))))

    async def _distinct(self, receiver, args, optargs, env):
        unique = []
        for item in sorted(await self.sequence(receiver), key=sort_key):
            if not unique or unique[-1] != item:
                unique.append(item)
        return unique

    async def _count(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        if isinstance(value, (str, dict)) and not args:
            return len(value)
        items = await self.sequence(value)
        if not args:
            return len(items)
        if isinstance(args[0], Func):
            return len([i for i in items if truthy(await self.call(args[0], env, i))])
        return len([i for i in items if i == args[0]])

    async def _sum(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        pairs = await self._selected(args[0] if args else None, items, env)
        return sum([value for value, _ in pairs])

    async def _avg(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        pairs = await self._selected(args[0] if args else None, items, env)
        if not pairs:
            raise NonExistenceError('Cannot take the average of an empty stream.')
        return sum([value for value, _ in pairs]) / len(pairs)

    async def _min(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        pairs = await self._selected(args[0] if args else None, items, env)
        if not pairs:
            raise NonExistenceError('Cannot take the min of an empty stream.')
        return min(pairs, key=lambda pair: sort_key(pair[0]))[1]

    async def _max(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        pairs = await self._selected(args[0] if args else None, items, env)
        if not pairs:
            raise NonExistenceError('Cannot take the max of an empty stream.')
        return max(pairs, key=lambda pair: sort_key(pair[0]))[1]

    async def _reduce(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        if not items:
            raise NonExistenceError('Cannot reduce over an empty stream.')
        result = items[0]
        for item in items[1:]:
            result = await self.call(args[0], env, result, item)
        return result

    async def _group(self, receiver, args, optargs, env):
        groups = []
        for key, item in await self._selected(args[0], await self.sequence(receiver), env):
            for group_key, members in groups:
                if group_key == key:
                    members.append(item)
                    break
            else:
                groups.append((key, [item]))
        return Grouped(groups)

    async def _ungroup(self, receiver, args, optargs, env):
        if not isinstance(receiver, Grouped):
            raise QueryError(f'ungroup expects GROUPED_DATA but found {type_name(receiver)}')
        groups = sorted(receiver.groups, key=lambda group: sort_key(group[0]))
        return [
            {'group': key, 'reduction': await self.materialize(value)}
            for key, value in groups
        ]

    async def _contains(self, receiver, args, optargs, env):
        items = await self.sequence(receiver)
        for value in args:
            if isinstance(value, Func):
                found = False
                for item in items:
                    if truthy(await self.call(value, env, item)):
                        found = True
                        break
                if not found:
                    return False
            elif value not in items:
                return False
        return True

    async def _inner_join(self, receiver, args, optargs, env):
        others = await self.sequence(args[0])
        joined = []
        for left in await self.sequence(receiver):
            for right in others:
                if truthy(await self.call(args[1], env, left, right)):
                    joined.append({'left': left, 'right': right})
        return joined

    async def _outer_join(self, receiver, args, optargs, env):
        others = await self.sequence(args[0])
        joined = []
        for left in await self.sequence(receiver):
            matched = False
            for right in others:
                if truthy(await self.call(args[1], env, left, right)):
                    joined.append({'left': left, 'right': right})
                    matched = True
            if not matched:
                joined.append({'left': left})
        return joined

    async def _eq_join(self, receiver, args, optargs, env):
        table = self.table_of(args[1])
        index = optargs.get('index', 'id')
        others = await self.sequence(args[1])
        joined = []
        for value, left in await self._selected(args[0], await self.sequence(receiver), env):
            for right in others:
                if value in self.index_values(right, table, index):
                    joined.append({'left': left, 'right': right})
        return joined

    async def _zip(self, receiver, args, optargs, env):
        return [
            {**item['left'], **item.get('right', {})}
            for item in await self.sequence(receiver)
        ]

    async def _changes(self, term: Term, env: dict) -> Any:
        table, matcher = await self._feed_source(term.receiver, env)
        include_states = await self.evaluate(term.optargs.get('include_states', False), env)
        return await self.store.subscribe(table, matcher, truthy(include_states))

    async def _feed_source(self, term: Term, env: dict) -> tuple[str, Optional[Callable]]:
        """The table and document predicate of the chain a changes
            subscription follows.
        """
        if term.op is Op.TABLE:
            receiver = await self.apply(term, env)
            return receiver.name, None

        if term.op not in (Op.FILTER, Op.GET, Op.GET_ALL):
            raise QueryError(f'changes cannot follow {term.op.value}')

        table, inner = await self._feed_source(term.receiver, env)
        args = [await self.evaluate(arg, env) for arg in term.args]
        optargs = {k: await self.evaluate(v, env) for k, v in term.optargs.items()}

        async def matcher(document: dict) -> bool:
            if inner is not None and not await inner(document):
                return False
            if term.op is Op.GET:
                return document.get('id') == args[0]
            if term.op is Op.GET_ALL:
                values = self.index_values(document, table, optargs.get('index', 'id'))
                return any([value in args for value in values])
            return await self.matches(args[0], document, optargs.get('default', False), env)

        return table, matcher

    # control
    async def _coerce_to(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        target = args[0].lower()
        if target == 'array':
            if isinstance(value, dict):
                return [[k, v] for k, v in value.items()]
            return await self.sequence(value)
        if target == 'object':
            if isinstance(value, dict):
                return value
            return {k: v for k, v in await self.sequence(value)}
        if target == 'string':
            if isinstance(value, str):
                return value
            return json.dumps(await self.materialize(value), default=json_default)
        if target == 'number':
            return value if isinstance(value, (int, float)) else float(value)
        if target == 'bool':
            return truthy(value)
        raise QueryError(f'cannot coerce {type_name(value)} to {args[0]}')

    async def _default(self, term: Term, env: dict) -> Any:
        try:
            value = await self.deref(await self.evaluate(term.receiver, env))
        except NonExistenceError as e:
            return await self.call(await self.evaluate(term.args[0], env), env, str(e))
        if value is None:
            fallback = await self.evaluate(term.args[0], env)
            return await self.call(fallback, env, None)
        return value

    async def _do(self, receiver, args, optargs, env):
        return await self.call(args[0], env, await self.deref(receiver))

    async def _type_of(self, receiver, args, optargs, env):
        return type_name(receiver)

    # documents and arrays
    async def _pluck(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        if value is None:
            raise NonExistenceError('cannot pluck from NULL')
        return pluck(value, args)

    async def _without(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        if value is None:
            raise NonExistenceError('cannot apply without to NULL')
        return without(value, args)

    async def _merge(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        for other in args:
            value = deep_merge(value, await self.call(other, env, value))
        return value

    async def _array(self, receiver: Any) -> list:
        value = await self.deref(receiver)
        if not isinstance(value, list):
            raise QueryError(f'expected type ARRAY but found {type_name(value)}')
        return list(value)

    async def _append(self, receiver, args, optargs, env):
        return [*await self._array(receiver), args[0]]

    async def _prepend(self, receiver, args, optargs, env):
        return [args[0], *await self._array(receiver)]

    async def _difference(self, receiver, args, optargs, env):
        return [v for v in await self._array(receiver) if v not in args[0]]

    async def _set_insert(self, receiver, args, optargs, env):
        return await self._set_union(receiver, [[args[0]]], optargs, env)

    async def _set_union(self, receiver, args, optargs, env):
        result = []
        for value in [*await self._array(receiver), *args[0]]:
            if value not in result:
                result.append(value)
        return result

    async def _set_intersection(self, receiver, args, optargs, env):
        result = []
        for value in await self._array(receiver):
            if value in args[0] and value not in result:
                result.append(value)
        return result

    async def _set_difference(self, receiver, args, optargs, env):
        result = []
        for value in await self._array(receiver):
            if value not in args[0] and value not in result:
                result.append(value)
        return result

    async def _get_field(self, receiver, args, optargs, env):
        return await self._bracket(receiver, args, optargs, env)

    async def _bracket(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        key = args[0]
        if value is None:
            raise NonExistenceError("Cannot perform bracket on NULL")
        if isinstance(value, dict):
            if key not in value:
                raise NonExistenceError(f'No attribute `{key}` in object')
            return value[key]
        if isinstance(key, int) and isinstance(value, list):
            if not -len(value) <= key < len(value):
                raise NonExistenceError(f'Index out of bounds: {key}')
            return value[key]
        if isinstance(key, str):
            return [
                item[key] for item in await self.sequence(value)
                if isinstance(item, dict) and key in item
            ]
        raise QueryError(f'cannot perform bracket on {type_name(value)}')

    async def _has_fields(self, receiver, args, optargs, env):
        def has(item: Any) -> bool:
            return isinstance(item, dict) and all([item.get(f) is not None for f in args])
        value = await self.deref(receiver)
        if isinstance(value, dict):
            return has(value)
        return self.reselect(receiver, [i for i in await self.sequence(value) if has(i)])

    async def _insert_at(self, receiver, args, optargs, env):
        items = await self._array(receiver)
        items.insert(args[0], args[1])
        return items

    async def _delete_at(self, receiver, args, optargs, env):
        items = await self._array(receiver)
        end = args[1] if len(args) > 1 else (args[0] + 1 or len(items))
        del items[args[0]:end]
        return items

    async def _change_at(self, receiver, args, optargs, env):
        items = await self._array(receiver)
        if not -len(items) <= args[0] < len(items):
            raise NonExistenceError(f'Index out of bounds: {args[0]}')
        items[args[0]] = args[1]
        return items

    async def _keys(self, receiver, args, optargs, env):
        return list((await self.deref(receiver)).keys())

    async def _values(self, receiver, args, optargs, env):
        return list((await self.deref(receiver)).values())

    # strings
    async def _match(self, receiver, args, optargs, env):
        found = re.search(args[0], receiver)
        if found is None:
            return None
        return {
            'str': found.group(0),
            'start': found.start(),
            'end': found.end(),
            'groups': [
                None if found.group(i) is None else {
                    'str': found.group(i),
                    'start': found.start(i),
                    'end': found.end(i),
                }
                for i in range(1, (found.re.groups or 0) + 1)
            ],
        }

    async def _split(self, receiver, args, optargs, env):
        separator, max_splits = args
        return receiver.split(separator, -1 if max_splits is None else max_splits)

    async def _upcase(self, receiver, args, optargs, env):
        return receiver.upper()

    async def _downcase(self, receiver, args, optargs, env):
        return receiver.lower()

    async def _to_json_string(self, receiver, args, optargs, env):
        return json.dumps(await self.materialize(receiver), default=json_default)

    # math and logic
    async def _add(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        for other in args:
            if isinstance(value, datetime):
                value = value + timedelta(seconds=other)
            else:
                value = value + other
        return value

    async def _sub(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        for other in args:
            if isinstance(value, datetime) and isinstance(other, datetime):
                value = (value - other).total_seconds()
            elif isinstance(value, datetime):
                value = value - timedelta(seconds=other)
            else:
                value = value - other
        return value

    async def _mul(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        for other in args:
            value = value * other
        return value

    async def _div(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        for other in args:
            value = value / other
        return value

    async def _mod(self, receiver, args, optargs, env):
        return await self.deref(receiver) % args[0]

    async def _and(self, term: Term, env: dict) -> Any:
        value = await self.deref(await self.evaluate(term.receiver, env)) \
            if term.receiver is not None else True
        for arg in term.args:
            if not truthy(value):
                return value
            value = await self.deref(await self.evaluate(arg, env))
        return value

    async def _or(self, term: Term, env: dict) -> Any:
        value = await self.deref(await self.evaluate(term.receiver, env)) \
            if term.receiver is not None else False
        for arg in term.args:
            if truthy(value):
                return value
            value = await self.deref(await self.evaluate(arg, env))
        return value

    async def _not(self, receiver, args, optargs, env):
        return not truthy(await self.deref(receiver))

    async def _compare(self, receiver: Any, args: list, check: Callable) -> bool:
        values = [await self.deref(receiver), *args]
        return all([
            check(sort_key(values[i]), sort_key(values[i+1]))
            for i in range(len(values) - 1)
        ])

    async def _eq(self, receiver, args, optargs, env):
        value = await self.deref(receiver)
        return all([value == other for other in args])

    async def _ne(self, receiver, args, optargs, env):
        return not await self._eq(receiver, args, optargs, env)

    async def _gt(self, receiver, args, optargs, env):
        return await self._compare(receiver, args, lambda a, b: a > b)

    async def _ge(self, receiver, args, optargs, env):
        return await self._compare(receiver, args, lambda a, b: a >= b)

    async def _lt(self, receiver, args, optargs, env):
        return await self._compare(receiver, args, lambda a, b: a < b)

    async def _le(self, receiver, args, optargs, env):
        return await self._compare(receiver, args, lambda a, b: a <= b)

    async def _round(self, receiver, args, optargs, env):
        return round(receiver)

    async def _ceil(self, receiver, args, optargs, env):
        return ceil(receiver)

    async def _floor(self, receiver, args, optargs, env):
        return floor(receiver)

    # time
    async def _during(self, receiver, args, optargs, env):
        return in_bounds(
            receiver, args[0], args[1],
            optargs.get('left_bound', 'closed'), optargs.get('right_bound', 'open'),
        )

    async def _date(self, receiver, args, optargs, env):
        return receiver.replace(hour=0, minute=0, second=0, microsecond=0)

    async def _year(self, receiver, args, optargs, env):
        return receiver.year

    async def _month(self, receiver, args, optargs, env):
        return receiver.month

    async def _day(self, receiver, args, optargs, env):
        return receiver.day

    async def _day_of_week(self, receiver, args, optargs, env):
        return receiver.isoweekday()

    async def _day_of_year(self, receiver, args, optargs, env):
        return receiver.timetuple().tm_yday

    async def _hours(self, receiver, args, optargs, env):
        return receiver.hour

    async def _minutes(self, receiver, args, optargs, env):
        return receiver.minute

    async def _seconds(self, receiver, args, optargs, env):
        return receiver.second + receiver.microsecond / 1_000_000

    async def _to_iso8601(self, receiver, args, optargs, env):
        return receiver.isoformat()

    async def _to_epoch_time(self, receiver, args, optargs, env):
        return (receiver - _EPOCH).total_seconds()

    # geometry
    async def _distance(self, receiver, args, optargs, env):
        return Point.parse(receiver).distance(Point.parse(args[0]))

    async def _to_geojson(self, receiver, args, optargs, env):
        return Point.parse(receiver).to_geojson()
