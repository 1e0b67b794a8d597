"""
    Traits bundle schema properties, indexes, hooks, instance methods,
    and query methods for reuse across models. List them in the
    `traits` tuple of a model; they are flattened into the model's
    namespace at registration, base to derived.
"""

from __future__ import annotations
from .errors import UniquenessViolationError
from .namespace import Namespace
from .shapes import Op
from .terms import r
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any
import logging

if TYPE_CHECKING:
    from .classes import Model
    from .query import Query


logger = logging.getLogger(__name__)


class Trait:
    """Base class for traits. Subclasses may declare `schema`,
        `indexes`, `methods` (instance methods installed on the model),
        `query_methods` (methods installed on the model's query class),
        and any of the hooks `before_save`, `before_create`,
        `after_create`, `after_save`, `before_run`, `setup`, and
        `serialize`.
    """
    schema: dict = {}
    indexes: tuple = ()
    methods: dict = {}
    query_methods: dict = {}


class Timestamp(Trait):
    """Adds `created`, set when the record is first inserted, and
        `updated`, set on every save.
    """
    schema = {
        'created': {'type': datetime},
        'updated': {'type': datetime},
    }

    def before_save(self, namespace: Namespace) -> None:
        now = datetime.now(timezone.utc)
        if self.is_new:
            self.set('created', now)
        self.set('updated', now)


async def _soft_delete(self: Model) -> Model:
    """Mark the record deleted instead of removing it."""
    if self.is_new:
        return self
    self.set('deleted', datetime.now(timezone.utc))
    return await self.save()

async def _restore(self: Model) -> Model:
    """Clear the deleted mark of a soft-deleted record."""
    self.set('deleted', None)
    return await self.save()

def _with_deleted(self: Query) -> Query:
    """Include soft-deleted records in the results."""
    return self.with_notes(with_deleted=True)

def _soft_delete_query(self: Query, return_changes: bool = False) -> Query:
    """Mark the selected records deleted instead of removing them."""
    return self.update({'deleted': r.now()}, return_changes=return_changes)


class SoftDelete(Trait):
    """Adds a `deleted` timestamp. Queries exclude records with a
        deleted timestamp unless `with_deleted()` is called, and delete
        marks records instead of removing them.
        A filter cannot precede `get`, so a chain ending in `get` yields
        None for a deleted record instead.
    """
    schema = {
        'deleted': {'type': datetime},
    }
    methods = {
        'delete': _soft_delete,
        'restore': _restore,
    }
    query_methods = {
        'with_deleted': _with_deleted,
        'delete': _soft_delete_query,
    }

    @staticmethod
    def before_run(query: Query) -> Query:
        if query.notes.get('with_deleted'):
            return query
        if query.ops[-1][0] is Op.GET:
            return query.do(lambda row: r.branch(
                row.eq(None) | row['deleted'].default(None).ne(None), None, row
            ))
        return query.tap_filter_right({'deleted': None})


def _unique_table(namespace: Namespace, name: str) -> str:
    return f'{namespace.name}_{name}_unique'

def _unique_key(value: Any) -> Any:
    """Keys are compared case-insensitively."""
    if type(value) is str:
        return value.lower()
    return value


class UniqueProperty(Trait):
    """Enforces schema properties declared with `unique: True` through
        one lookup table per property. Also adds the class coroutine
        `is_<property>_unique(value)` for each of them.
    """

    @staticmethod
    async def setup(namespace: Namespace) -> None:
        database = namespace.model.database
        for prop in namespace.filter_schema('unique'):
            table = _unique_table(namespace, prop.property)
            await database.store.ensure_table(table)

            async def is_unique(cls, value: Any, table: str = table) -> bool:
                found = await cls.database.query().table(table).get(
                    _unique_key(value)
                ).run()
                return found is None

            setattr(namespace.model, f'is_{prop.property}_unique', classmethod(is_unique))

    async def before_save(self, namespace: Namespace) -> None:
        """Claim the new values of unique properties. On a collision the
            claims made so far are released and UniquenessViolationError
            is raised; otherwise the replaced values are released.
        """
        query = self.database.query
        claimed = []
        replaced = []
        for prop in namespace.filter_schema('unique'):
            name = prop.property
            value = self.data.get(name)
            old = self.old_values.get(name)
            if not self.is_new and name not in self.pending_update:
                continue
            if value is None or (not self.is_new and old is not None
                                 and _unique_key(old) == _unique_key(value)):
                continue

            table = _unique_table(namespace, name)
            result = await query().table(table).insert({'id': _unique_key(value)}).run()
            if result['errors']:
                for claimed_table, key in claimed:
                    await query().table(claimed_table).get(key).delete().run()
                raise UniquenessViolationError(namespace.name, name)

            claimed.append((table, _unique_key(value)))
            if not self.is_new and old is not None:
                replaced.append((table, _unique_key(old)))

        for table, key in replaced:
            await query().table(table).get(key).delete().run()


def _set_context(self: Model, context: Any) -> Model:
    """Set the context passed to private property checks when
        serializing. Return self in monad pattern.
    """
    self._private_context = context
    return self


class Private(Trait):
    """Omits private schema properties from `serialize`. A property
        declared `private: True` is always omitted; one declared with a
        callable is kept only if `private(instance, context)` returns
        True, where context is set with `set_context`.
    """
    methods = {
        'set_context': _set_context,
    }

    def serialize(self, payload: dict) -> dict:
        context = getattr(self, '_private_context', None)
        for prop in self.namespace.filter_schema('private'):
            visible = prop.private(self, context) if callable(prop.private) else False
            if not visible:
                payload.pop(prop.property, None)
        return payload
