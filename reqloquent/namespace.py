from __future__ import annotations
from .errors import tert, vert
from .interfaces import RelationProtocol
from .point import Point
from .tools import get_index_name
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable, Type
import logging

if TYPE_CHECKING:
    from .classes import Model
    from .relations import (
        BelongsTo,
        HasMany,
        HasOne,
        ManyToMany,
        RelationDeclaration,
    )


logger = logging.getLogger(__name__)

HOOKS = (
    'before_save',
    'before_create',
    'after_create',
    'after_save',
    'before_run',
    'setup',
    'serialize',
)

_MISSING = object()


def coerce_datetime(value: Any) -> datetime:
    """Coerce a datetime, date, ISO 8601 string, or epoch number into
        an aware datetime. Naive values are taken to be UTC.
    """
    if isinstance(value, datetime):
        pass
    elif isinstance(value, date):
        value = datetime(value.year, value.month, value.day)
    elif type(value) is str:
        value = datetime.fromisoformat(value)
    elif type(value) in (int, float):
        return datetime.fromtimestamp(value, timezone.utc)
    else:
        raise TypeError('datetime value must be datetime|date|str|int|float')

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value

def coerce_scalar(kind: Any, value: Any) -> Any:
    if value is None or kind is Any or kind is object:
        return value
    if kind is datetime:
        return coerce_datetime(value)
    if kind is Point:
        return Point.parse(value)
    if isinstance(value, kind):
        return value
    return kind(value)


@dataclass
class SchemaProperty:
    """One schema entry."""
    property: str
    type: Any = Any
    allow_null: bool = True
    default: Any = _MISSING
    unique: bool = False
    private: bool|Callable = False
    relation: bool = False

    @classmethod
    def parse(cls, name: str, definition: Any) -> SchemaProperty:
        """Normalize a definition: a SchemaProperty, a dict with a
            'type' key, or a bare type. Raises TypeError for invalid
            definitions.
        """
        tert(type(name) is str, 'schema property name must be str')
        if isinstance(definition, SchemaProperty):
            return definition
        if not isinstance(definition, dict):
            definition = {'type': definition}

        tert('type' in definition, f'schema property {name} must declare a type')
        unknown = set(definition) - {'type', 'allow_null', 'default', 'unique', 'private'}
        vert(not unknown, f'unknown schema options for {name}: {", ".join(sorted(unknown))}')
        kind = definition['type']
        if type(kind) is list:
            tert(len(kind) == 1, f'array type of {name} must be [element_type]')
        return cls(property=name, **definition)

    @property
    def is_array(self) -> bool:
        return type(self.type) is list

    def coerce(self, value: Any) -> Any:
        """Coerce a value to the declared type. None stays None. Raises
            TypeError for a non-sequence given to an array property.
        """
        if value is None:
            return None
        if self.is_array:
            tert(type(value) in (list, tuple),
                f'{self.property} must be list')
            return [coerce_scalar(self.type[0], v) for v in value]
        return coerce_scalar(self.type, value)

    def default_value(self) -> Any:
        """The declared default (called if callable, else copied), or
            None.
        """
        if self.default is _MISSING:
            return None
        if callable(self.default):
            return self.coerce(self.default())
        return self.coerce(deepcopy(self.default))


@dataclass(frozen=True)
class IndexSpec:
    """A secondary index over one or more (possibly nested) properties."""
    name: str
    properties: tuple[str, ...]
    multi: bool = False
    geo: bool = False

    @classmethod
    def parse(cls, definition: str|dict|IndexSpec) -> IndexSpec:
        """Parse a property name or a dict of {name?, properties,
            multi?, geo?}. Raises TypeError or ValueError for invalid
            definitions, including nested or compound indexes without
            a name.
        """
        if isinstance(definition, IndexSpec):
            return definition
        if type(definition) is str:
            definition = {'properties': [definition]}
        tert(isinstance(definition, dict), 'index definition must be str|dict')
        tert('properties' in definition, 'index definition must include properties')
        properties = definition['properties']
        if type(properties) is str:
            properties = [properties]
        return cls(
            name=get_index_name(properties, definition.get('name')),
            properties=tuple(properties),
            multi=bool(definition.get('multi', False)),
            geo=bool(definition.get('geo', False)),
        )

    def as_dict(self) -> dict:
        return {
            'name': self.name,
            'properties': self.properties,
            'multi': self.multi,
            'geo': self.geo,
        }


@dataclass
class Namespace:
    """Per-model runtime descriptor: schema, indexes, relations, hooks,
        and trait contributions. Built at registration, completed by the
        resolver on connect, and read-only afterward.
    """
    model: Type[Model]
    name: str = ''
    table: str = ''
    schema: dict[str, SchemaProperty] = field(default_factory=dict)
    indexes: list[IndexSpec] = field(default_factory=list)
    declarations: dict[str, RelationDeclaration] = field(default_factory=dict)
    belongs_to: list[BelongsTo] = field(default_factory=list)
    has_one: list[HasOne] = field(default_factory=list)
    has_many: list[HasMany] = field(default_factory=list)
    many_to_many: list[ManyToMany] = field(default_factory=list)
    hooks: dict[str, list[Callable]] = field(
        default_factory=lambda: {name: [] for name in HOOKS}
    )
    methods: dict[str, Callable] = field(default_factory=dict)
    query_methods: dict[str, Callable] = field(default_factory=dict)
    resolved: bool = False

    def __post_init__(self) -> None:
        self.name = self.name or self.model.__name__
        self.table = self.table or self.model.__dict__.get('table') or self.name

    @classmethod
    def build(cls, model: Type[Model], sources: Iterable[type]) -> Namespace:
        """Flatten the trait chain of a model into a new Namespace.
            Sources are applied in order, so later (more derived)
            declarations win; overridden schema properties are logged.
        """
        namespace = cls(model)
        for source in sources:
            namespace.collect(source)
        return namespace

    def collect(self, source: type) -> None:
        """Add the declarations made directly on a trait or model class."""
        declared = vars(source)
        for name, definition in declared.get('schema', {}).items():
            if name in self.schema:
                logger.warning(
                    '%s: schema property %s declared by %s overrides an earlier declaration',
                    self.name, name, source.__name__
                )
            self.add_schema_property(name, definition)

        for definition in declared.get('indexes', ()):
            self.add_index(definition)

        for name, declaration in declared.get('relations', {}).items():
            self.declarations[name] = declaration

        moved = declared.get('_hooks', {})
        for event in HOOKS:
            if event in moved:
                self.hooks[event].append(moved[event])
            elif event in declared:
                self.hooks[event].append(getattr(source, event))

        self.methods.update(declared.get('methods', {}))
        self.query_methods.update(declared.get('query_methods', {}))

    def add_schema_property(self, name: str, definition: Any) -> SchemaProperty:
        """Insert or overwrite a schema entry."""
        self.schema[name] = SchemaProperty.parse(name, definition)
        return self.schema[name]

    def add_key_property(self, key: str) -> None:
        """Synthesize a foreign key column. A column synthesized by
            another relation is shared; a column declared explicitly
            raises ValueError.
        """
        if key in self.schema:
            vert(self.schema[key].relation,
                f'synthesized key {self.name}.{key} collides with a schema property')
            return
        self.schema[key] = SchemaProperty(key, str, allow_null=True, relation=True)

    def filter_schema(self, option: str) -> list[SchemaProperty]:
        """Return the schema entries whose option is truthy."""
        return [prop for prop in self.schema.values() if getattr(prop, option)]

    def add_index(self, definition: str|dict|IndexSpec) -> IndexSpec:
        index = IndexSpec.parse(definition)
        if index not in self.indexes:
            self.indexes.append(index)
        return index

    def add_relation(self, relation: RelationProtocol) -> None:
        """Add a resolved relation to the list for its kind. Raises
            ValueError if the property is a schema property or already
            a relation.
        """
        tert(isinstance(relation, RelationProtocol),
            'relation must implement RelationProtocol')
        vert(relation.property not in self.schema,
            f'relation {self.name}.{relation.property} collides with a schema property')
        vert(self.get_relation(relation.property) is None,
            f'relation {self.name}.{relation.property} is already defined')
        getattr(self, relation.kind).append(relation)

    def relations(self) -> list:
        """All resolved relations in populate order."""
        return [*self.belongs_to, *self.has_one, *self.has_many, *self.many_to_many]

    def get_relation(self, property: str):
        for relation in self.relations():
            if relation.property == property:
                return relation
        return None

    def relation_properties(self) -> list[str]:
        return [relation.property for relation in self.relations()]

    def key_properties(self) -> list[str]:
        """Names of the synthesized foreign key columns."""
        return [prop.property for prop in self.filter_schema('relation')]
