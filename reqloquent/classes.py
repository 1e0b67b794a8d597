from __future__ import annotations
from .errors import tert, vert, tressa
from .namespace import Namespace
from .point import Point
from .query import Query
from .relations import RelatedCollection
from .shapes import Op, Shape, TRANSITIONS
from dataclasses import dataclass, field
from datetime import datetime
from inspect import isawaitable
from types import MethodType
from typing import TYPE_CHECKING, Any, Callable, Optional, Type
from uuid import uuid4
import json
import logging

if TYPE_CHECKING:
    from .database import Database


logger = logging.getLogger(__name__)

# hooks sharing a name with a Model method
SHADOWING_HOOKS = ('serialize',)


@dataclass
class SaveContext:
    """State shared by every instance saved within one `save()` call:
        the ids of instances currently being saved and the closures
        deferred until the root save finishes.
    """
    stack: set[int] = field(default_factory=set)
    pending: list[Callable] = field(default_factory=list)

    def is_saving(self, instance: Model) -> bool:
        return id(instance) in self.stack

    def push(self, instance: Model) -> None:
        self.stack.add(id(instance))

    def pop(self, instance: Model) -> None:
        self.stack.discard(id(instance))

    def defer(self, closure: Callable) -> None:
        logger.debug('deferring %r until the end of the save', closure)
        self.pending.append(closure)

    async def flush(self) -> None:
        while self.pending:
            result = self.pending.pop(0)()
            if isawaitable(result):
                await result


def trait_chain(model: type) -> list[type]:
    """The classes contributing declarations to a model, base to
        derived: for each model class in the MRO, its traits in declared
        order and then the class itself. Each class appears once.
    """
    chain = []

    def add(source: type) -> None:
        if source not in chain:
            chain.append(source)

    for cls in reversed(model.__mro__):
        if not issubclass(cls, Model) or cls is Model:
            continue
        for trait in cls.__dict__.get('traits', ()):
            tert(isinstance(trait, type), f'traits of {cls.__name__} must be classes')
            for source in reversed(trait.__mro__):
                if source is not object:
                    add(source)
        add(cls)
    return chain


class hybridmethod:
    """Resolves to a query chain verb on a registered model class and
        to the instance operation on an instance. Traits may replace the
        instance operation through their `methods`.
    """
    name: str
    function: Callable

    def __init__(self, function: Callable) -> None:
        self.function = function
        self.name = function.__name__
        self.__doc__ = function.__doc__

    def __get__(self, instance: Optional[Model], owner: Type[Model]) -> Callable:
        namespace = owner.namespace
        if instance is None:
            if namespace is None:
                return self.function
            return getattr(owner.query(), self.name)
        function = self.function
        if namespace is not None:
            function = namespace.methods.get(self.name, function)
        return MethodType(function, instance)


class ModelMeta(type):
    """Exposes every verb that can follow a table, plus the query
        methods contributed by traits, as a class attribute that starts
        a new chain, e.g. `Model.get_all(...)` or `Model.filter(...)`.
        Hooks declared on a model under the name of a Model method are
        moved into `_hooks` so they do not replace that method.
    """
    def __new__(mcs, name: str, bases: tuple, attrs: dict) -> ModelMeta:
        if any([isinstance(base, ModelMeta) for base in bases]):
            moved = {
                hook: attrs.pop(hook)
                for hook in SHADOWING_HOOKS if hook in attrs
            }
            if moved:
                attrs['_hooks'] = moved
        return super().__new__(mcs, name, bases, attrs)

    def __getattr__(cls, name: str) -> Any:
        namespace = cls.__dict__.get('namespace')
        if namespace is not None and not name.startswith('_'):
            if name in namespace.query_methods:
                return getattr(cls.query(), name)
            op = Op.from_method(name)
            if op is not None and op in TRANSITIONS[Shape.TABLE]:
                return getattr(cls.query(), name)
        raise AttributeError(f"type object '{cls.__name__}' has no attribute '{name}'")


class Model(metaclass=ModelMeta):
    """Base class for document models. Declare the table, schema,
        relations, indexes, and traits as class attributes, then
        register the class with a Database.
    """
    table: str = ''
    schema: dict = {}
    relations: dict = {}
    indexes: tuple = ()
    traits: tuple = ()
    namespace: Namespace = None
    database: Database = None
    query_class: Type[Query] = Query
    data: dict
    pending_update: dict
    old_values: dict

    def __init__(self, data: dict = None) -> None:
        """Initialize a new instance. Schema defaults are applied and
            the given values are set through the property setters.
            Raises UsageError if the model is not connected, or
            TypeError/ValueError for invalid values.
        """
        data = {} if data is None else data
        tert(isinstance(data, dict), 'data must be dict')
        self._setup()
        namespace = self.namespace

        for name, prop in namespace.schema.items():
            if name not in data and not prop.relation:
                value = prop.default_value()
                if value is not None:
                    self.data[name] = value

        if 'id' in data:
            self.data['id'] = data['id']
        for key, value in data.items():
            if key in namespace.schema:
                self.set(key, value)
            elif namespace.get_relation(key) is not None:
                setattr(self, key, value)

    def _setup(self) -> None:
        namespace = self.__class__.namespace
        tressa(namespace is not None and namespace.resolved,
            f'{self.__class__.__name__} must be registered and connected before use')
        self.data = {}
        self.pending_update = {}
        self.old_values = {}
        self.relations = {}
        for relation in [*namespace.belongs_to, *namespace.has_one]:
            self.relations[relation.property] = None
        for relation in [*namespace.has_many, *namespace.many_to_many]:
            self.relations[relation.property] = relation.collection(self)

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(data={self.data})'

    @classmethod
    def from_record(cls, record: dict, cache: dict = None) -> Model:
        """Hydrate an instance from a database document without dirty
            tracking. Related records are deduplicated through the
            cache, keyed by model name and id.
        """
        tert(isinstance(record, dict), 'record must be dict')
        cache = {} if cache is None else cache
        key = f'{cls.__name__}{record.get("id")}'
        if key in cache:
            return cache[key]

        instance = cls.__new__(cls)
        instance._setup()
        if record.get('id') is not None:
            cache[key] = instance
        return instance.assign(record, cache)

    @staticmethod
    def create_property(name: str) -> property:
        """Create a dynamic property for the schema property with the
            given name. The setter goes through `set`.
        """
        @property
        def prop(self):
            return self.data.get(name)
        @prop.setter
        def prop(self, value):
            self.set(name, value)
        return prop

    def set(self, name: str, value: Any) -> Model:
        """Coerce and stage a new value for a schema property. Return
            self in monad pattern. Raises ValueError for unknown
            properties or a null value for a non-nullable property.
        """
        prop = self.namespace.schema.get(name)
        vert(prop is not None, f'{self.__class__.__name__} has no property {name}')
        value = prop.coerce(value)
        vert(value is not None or prop.allow_null,
            f'{self.__class__.__name__}.{name} cannot be null')
        if name not in self.old_values:
            self.old_values[name] = self.data.get(name)
        self.data[name] = value
        self.pending_update[name] = value
        return self

    def assign(self, data: dict, cache: dict = None) -> Model:
        """Set the present schema values and related records from a
            database payload without dirty tracking. Return self in
            monad pattern.
        """
        tert(isinstance(data, dict), 'data must be dict')
        cache = {} if cache is None else cache
        namespace = self.namespace
        for key, value in data.items():
            if key == 'id':
                self.data['id'] = value
            elif key in namespace.schema:
                self.data[key] = namespace.schema[key].coerce(value)
            else:
                relation = namespace.get_relation(key)
                if relation is not None:
                    relation.load(self, value, cache)
        return self

    @property
    def id(self) -> Any:
        return self.data.get('id')

    @property
    def is_new(self) -> bool:
        return self.data.get('id') is None

    @property
    def is_dirty(self) -> bool:
        return bool(self.pending_update) or any([
            value.is_dirty for value in self.relations.values()
            if isinstance(value, RelatedCollection)
        ])

    def _clean(self) -> None:
        self.pending_update = {}
        self.old_values = {}

    @classmethod
    def generate_id(cls) -> str:
        """Generates and returns a hexadecimal UUID4."""
        return uuid4().bytes.hex()

    async def _run_hooks(self, event: str, *args) -> None:
        for hook in self.namespace.hooks[event]:
            result = hook(self, *args)
            if isawaitable(result):
                await result

    async def save(self) -> Model:
        """Persist the instance and its related instances. Return self
            in monad pattern. A hook or write that raises aborts the
            save with the change-set left intact.
        """
        await self._save(SaveContext(), root=True)
        return self

    async def _save(self, context: SaveContext, root: bool = False) -> Model:
        if context.is_saving(self):
            return self
        context.push(self)
        namespace = self.namespace

        await self._run_hooks('before_save', namespace)
        for relation in namespace.belongs_to:
            await relation.save(self, context)

        if self.is_new:
            await self._run_hooks('before_create', namespace)
            await self.insert()
            await self._run_hooks('after_create', namespace)
        else:
            await self.update()

        for relation in [*namespace.has_one, *namespace.has_many, *namespace.many_to_many]:
            await relation.save(self, context)

        if self.pending_update:
            await self.update()
        context.pop(self)

        if root:
            await context.flush()
        await self._run_hooks('after_save', namespace)
        return self

    def _table(self) -> Query:
        return self.database.query().table(self.namespace.table)

    @hybridmethod
    async def insert(self) -> Model:
        """Insert the instance as a new record, generating an id if it
            has none. Return self in monad pattern. Raises ValueError
            for a missing non-nullable value or a store error.
        """
        namespace = self.namespace
        record = {}
        for name, prop in namespace.schema.items():
            vert(prop.allow_null or self.data.get(name) is not None,
                f'{self.__class__.__name__}.{name} cannot be null')
            record[name] = self.data.get(name)
        record['id'] = self.data.get('id') or self.generate_id()

        result = await self._table().insert(record).run()
        vert(not result['errors'], result.get('first_error', 'insert failed'))
        self.data['id'] = record['id']
        self._clean()
        return self

    @hybridmethod
    async def update(self, updates: dict = None) -> Model:
        """Apply the updates, if any, then persist the pending changes.
            Return self in monad pattern. Raises TypeError for invalid
            updates or UsageError for an unsaved instance.
        """
        tert(updates is None or isinstance(updates, dict), 'updates must be dict')
        for name, value in (updates or {}).items():
            self.set(name, value)
        if not self.pending_update:
            return self

        tressa(not self.is_new, 'cannot update an instance that was never inserted')
        await self._table().get(self.id).update(dict(self.pending_update)).run()
        self._clean()
        return self

    @hybridmethod
    async def delete(self) -> Model:
        """Delete the record. Does nothing for an unsaved instance."""
        if not self.is_new:
            await self._table().get(self.id).delete().run()
        return self

    async def reload(self) -> Model:
        """Reload values from the database, discarding pending changes.
            Return self in monad pattern. Raises UsageError for an
            unsaved instance.
        """
        tressa(not self.is_new, 'id must be set to reload from db')
        record = await self._table().get(self.id).run()
        if record is not None:
            self.assign(record)
        self._clean()
        return self

    @hybridmethod
    async def populate(self, selector: dict|bool|None = None) -> Model:
        """Load related records from the database and assign them.
            Return self in monad pattern. Raises UsageError for an
            unsaved instance.
        """
        tressa(not self.is_new, 'id must be set to populate from db')
        namespace = self.namespace
        fields = ['id', *namespace.relation_properties(), *namespace.key_properties()]
        query = self.__class__.query().get(self.id).populate(selector).pluck(*fields)
        record = await self.database.execute(query.to_term())
        if record is not None:
            self.assign(record, {f'{self.__class__.__name__}{self.id}': self})
        return self

    def serialize(self) -> dict:
        """Return a dict of the id, schema properties, and loaded
            relations. A relation already expanded along the current
            path is omitted. Serialize hooks are applied last.
        """
        return self._serialize(frozenset())

    def _serialize(self, _path: frozenset) -> dict:
        name = self.__class__.__name__
        payload = {'id': self.id}
        for prop in self.namespace.schema:
            payload[prop] = self.data.get(prop)

        for relation in self.namespace.relations():
            marker = f'{name}{relation.property}'
            if marker in _path:
                continue
            path = _path | {marker}
            value = self.relations.get(relation.property)
            if isinstance(value, RelatedCollection):
                payload[relation.property] = [item._serialize(path) for item in value]
            elif value is not None:
                payload[relation.property] = value._serialize(path)

        for hook in self.namespace.hooks['serialize']:
            payload = hook(self, payload)
        return payload

    def to_json(self) -> str:
        """The serialized instance as a JSON string."""
        return json.dumps(self.serialize(), default=_json_default)

    @classmethod
    def query(cls, conditions: dict = None) -> Query:
        """Returns a query chain on the table of the model, filtered by
            equality on any conditions provided.
        """
        tressa(cls.namespace is not None, f'{cls.__name__} must be registered with a Database')
        tert(conditions is None or isinstance(conditions, dict), 'conditions must be dict')
        query = cls.query_class(model=cls).table(cls.namespace.table)
        if conditions:
            query = query.filter(conditions)
        return query

    @classmethod
    async def run(cls) -> list[Model]:
        """Load every record in the table."""
        return await cls.query().run()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Point):
        return value.to_geojson()
    raise TypeError(f'{type(value).__name__} is not JSON serializable')
