from __future__ import annotations
from .errors import tert, vert
from .namespace import IndexSpec
from .terms import Term, r
from .tools import _pascalcase_to_snake_case
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Optional, Type
import logging

if TYPE_CHECKING:
    from .classes import Model, SaveContext
    from .database import Database
    from .namespace import Namespace


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelationDeclaration:
    """An unresolved relation as written in a model's `relations` dict."""
    kind: str
    model: str|type
    foreign_key: str = 'id'
    primary_key: str = 'id'

    @property
    def model_name(self) -> str:
        return self.model if type(self.model) is str else self.model.__name__


def has_one(model: str|type, foreign_key: str = 'id') -> RelationDeclaration:
    """Declare that this model stores the key of one instance of model,
        addressed by its foreign_key column. Adds the column
        `<property>_<foreign_key>` to this model.
    """
    return RelationDeclaration('has_one', model, foreign_key=foreign_key)

def belongs_to(model: str|type, foreign_key: str = 'id') -> RelationDeclaration:
    """Declare that this model belongs to one instance of model. Adds
        the column `<snake(model)>_<property>_<foreign_key>` to this
        model.
    """
    return RelationDeclaration('belongs_to', model, foreign_key=foreign_key)

def has_many(model: str|type, primary_key: str = 'id') -> RelationDeclaration:
    """Declare that many instances of model point at this model. If
        model declares a has_many pointing back, the pair becomes a
        many-to-many relation through a join table; otherwise the
        column `<snake(this)>_<primary_key>` is added to model.
    """
    return RelationDeclaration('has_many', model, primary_key=primary_key)

def has_and_belongs_to_many(model: str|type) -> RelationDeclaration:
    """Declare a many-to-many relation through a join table, whether or
        not model declares the reverse relation.
    """
    return RelationDeclaration('has_and_belongs_to_many', model)


class RelatedCollection:
    """Managed collection of related models. It can be read like a
        sequence but changed only through `add` and `remove`, which
        track the changes for the next save of the owner.
    """
    owner: Model
    relation: HasMany|ManyToMany
    added: list[Model]
    removed: list[Model]
    _items: list[Model]

    def __init__(self, owner: Model, relation: HasMany|ManyToMany) -> None:
        self.owner = owner
        self.relation = relation
        self.added = []
        self.removed = []
        self._items = []

    def __iter__(self) -> Iterator[Model]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __getitem__(self, index: int) -> Model:
        return self._items[index]

    def __contains__(self, model: Model) -> bool:
        return any([item is model for item in self._items])

    def __repr__(self) -> str:
        return f'RelatedCollection({self.relation.model.__name__}, {self._items!r})'

    @property
    def is_dirty(self) -> bool:
        return bool(self.added or self.removed)

    def add(self, *models: Model) -> RelatedCollection:
        """Add related models. Raises TypeError for models of the wrong
            type. Return self in monad pattern.
        """
        for model in models:
            self.relation.check(model)
        for model in models:
            if self._track_add(model):
                self.relation.mirror(self.owner, model, added=True)
        return self

    def remove(self, *models: Model) -> RelatedCollection:
        """Remove related models. Models not in the collection are
            ignored. Return self in monad pattern.
        """
        for model in models:
            if self._track_remove(model):
                self.relation.mirror(self.owner, model, added=False)
        return self

    def _track_add(self, model: Model) -> bool:
        if model in self:
            return False
        self._items.append(model)
        if any([m is model for m in self.removed]):
            self.removed = [m for m in self.removed if m is not model]
        else:
            self.added.append(model)
        return True

    def _track_remove(self, model: Model) -> bool:
        if model not in self:
            return False
        self._items = [m for m in self._items if m is not model]
        if any([m is model for m in self.added]):
            self.added = [m for m in self.added if m is not model]
        else:
            self.removed.append(model)
        return True

    def _replace(self, models: Iterable[Model]) -> None:
        models = list(models)
        for model in models:
            self.relation.check(model)
        for model in list(self._items):
            if not any([m is model for m in models]):
                self.remove(model)
        self.add(*models)

    def _load(self, models: Iterable[Model]) -> None:
        """Set the contents from the database without tracking."""
        self._items = list(models)
        self.added = []
        self.removed = []

    def _clean(self) -> None:
        self.added = []
        self.removed = []


class Relation:
    """Base class for resolved relations."""
    kind: str = ''
    property: str
    model: Type[Model]

    def __init__(self, property: str, model: Type[Model]) -> None:
        self.property = property
        self.model = model

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}(property={self.property!r}, ' + \
            f'model={self.model.__name__})'

    def check(self, related: Any) -> None:
        """Raises TypeError if related is not an instance of the
            related model.
        """
        tert(isinstance(related, self.model),
            f'{self.property} must be instance of {self.model.__name__}')

    def _hydrate(self, value: Any, cache: dict) -> Model:
        if isinstance(value, self.model):
            return value
        tert(isinstance(value, dict),
            f'{self.property} must be {self.model.__name__}|dict')
        return self.model.from_record(value, cache)


class HasOne(Relation):
    """This model holds the key of one related instance in the column
        `key`, matching the `foreign_key` column of the related model.
    """
    kind = 'has_one'
    key: str
    foreign_key: str

    def __init__(self, property: str, model: Type[Model], key: str,
                 foreign_key: str = 'id') -> None:
        super().__init__(property, model)
        self.key = key
        self.foreign_key = foreign_key

    def create_property(self) -> property:
        """Create the property for the related instance. Setting it
            type-checks the value and updates the key column.
        """
        relation = self

        def getter(instance: Model) -> Optional[Model]:
            return instance.relations.get(relation.property)

        def setter(instance: Model, value: Optional[Model]) -> None:
            if value is not None:
                relation.check(value)
            instance.relations[relation.property] = value
            instance.set(
                relation.key,
                None if value is None else value.data.get(relation.foreign_key)
            )

        return property(getter, setter, doc=f'Related {self.model.__name__}.')

    def load(self, instance: Model, value: Any, cache: dict) -> None:
        instance.relations[self.property] = None if value is None \
            else self._hydrate(value, cache)

    async def save(self, instance: Model, context: SaveContext) -> None:
        """Save the related instance if needed and point the key column
            at it. If the related instance is mid-save and has no id
            yet, the pointer is deferred to the end of the save call.
        """
        target = instance.relations.get(self.property)
        if target is None:
            return

        if context.is_saving(target):
            if target.is_new:
                context.defer(partial(self._relink, instance, target))
                return
        elif target.is_new or target.is_dirty:
            await target._save(context)

        value = target.data.get(self.foreign_key)
        if instance.data.get(self.key) != value:
            instance.set(self.key, value)

    async def _relink(self, instance: Model, target: Model) -> None:
        instance.set(self.key, target.data.get(self.foreign_key))
        await instance.update()

    def populate(self, row: Term, expand: Callable = None) -> Term:
        lookup = r.table(self.model.namespace.table).get_all(
            row[self.key], index=self.foreign_key
        ).nth(0).default(None)
        if expand is None:
            return lookup
        return lookup.do(
            lambda record: r.branch(record.eq(None), None, record.merge(expand(record)))
        )


class BelongsTo(HasOne):
    """Same mechanism as HasOne for the owning direction. The related
        instance is saved before the declaring instance.
    """
    kind = 'belongs_to'


class HasMany(Relation):
    """Related instances hold the `foreign_key` value of this model in
        their `key` column.
    """
    kind = 'has_many'
    key: str
    foreign_key: str

    def __init__(self, property: str, model: Type[Model], key: str,
                 foreign_key: str = 'id') -> None:
        super().__init__(property, model)
        self.key = key
        self.foreign_key = foreign_key

    def create_property(self) -> property:
        """Create the property for the related collection. Setting it
            replaces the contents; raises TypeError unless given a
            list, tuple, or RelatedCollection of related instances.
        """
        relation = self

        def getter(instance: Model) -> RelatedCollection:
            return instance.relations[relation.property]

        def setter(instance: Model, value: Iterable[Model]) -> None:
            tert(isinstance(value, (list, tuple, RelatedCollection)),
                f'{relation.property} must be list|tuple|RelatedCollection')
            instance.relations[relation.property]._replace(value)

        return property(getter, setter, doc=f'Related {self.model.__name__} collection.')

    def collection(self, instance: Model) -> RelatedCollection:
        return RelatedCollection(instance, self)

    def mirror(self, owner: Model, related: Model, added: bool) -> None:
        """The key column of the child is the only other side."""
        return None

    def load(self, instance: Model, value: Any, cache: dict) -> None:
        tert(isinstance(value, (list, tuple)), f'{self.property} must be list')
        instance.relations[self.property]._load([
            self._hydrate(item, cache) for item in value if item is not None
        ])

    async def save(self, instance: Model, context: SaveContext) -> None:
        """Point each related instance at instance and save the ones
            that changed; clear the key of removed instances.
        """
        collection = instance.relations[self.property]
        value = instance.data.get(self.foreign_key)
        changed = [(child, value) for child in collection]
        changed.extend((child, None) for child in collection.removed)
        added = collection.added

        for child, key_value in changed:
            if child.data.get(self.key) != key_value:
                child.set(self.key, key_value)
            if context.is_saving(child):
                context.defer(child.update)
            elif child.is_new or child.is_dirty or any([child is a for a in added]):
                await child._save(context)
        collection._clean()

    def populate(self, row: Term, expand: Callable = None) -> Term:
        query = r.table(self.model.namespace.table).get_all(
            row[self.foreign_key], index=self.key
        ).coerce_to('array')
        if expand is None:
            return query
        return query.map(lambda record: record.merge(expand(record)))


class ManyToMany(HasMany):
    """Related instances are linked through rows of a join table
        holding the id of each side. Join row ids are the sorted pair of
        ids, so linking is idempotent from either side.
    """
    kind = 'many_to_many'
    foreign_property: Optional[str]
    my_key: str
    their_key: str
    join_table: str

    def __init__(self, property: str, model: Type[Model], foreign_property: Optional[str],
                 my_key: str, their_key: str, join_table: str) -> None:
        super().__init__(property, model, key=my_key)
        self.foreign_property = foreign_property
        self.my_key = my_key
        self.their_key = their_key
        self.join_table = join_table

    @staticmethod
    def join_id(first: Model, second: Model) -> str:
        return '_'.join(sorted([str(first.id), str(second.id)]))

    def mirror(self, owner: Model, related: Model, added: bool) -> None:
        """Apply an add or remove to the other side's collection."""
        if self.foreign_property is None:
            return
        collection = related.relations[self.foreign_property]
        if added:
            collection._track_add(owner)
        else:
            collection._track_remove(owner)

    async def save(self, instance: Model, context: SaveContext) -> None:
        """Save linked instances, then write join rows for added links
            and delete join rows for removed links.
        """
        collection = instance.relations[self.property]
        for other in collection.added:
            if context.is_saving(other):
                if other.is_new:
                    context.defer(partial(self.link, instance, other))
                    continue
            elif other.is_new or other.is_dirty:
                await other._save(context)
            await self.link(instance, other)

        for other in collection.removed:
            if not other.is_new:
                await self.unlink(instance, other)
        collection._clean()

    async def link(self, instance: Model, other: Model) -> None:
        await instance.database.query().table(self.join_table).insert({
            'id': self.join_id(instance, other),
            self.my_key: instance.id,
            self.their_key: other.id,
        }, conflict='replace').run()

    async def unlink(self, instance: Model, other: Model) -> None:
        await instance.database.query().table(self.join_table).get(
            self.join_id(instance, other)
        ).delete().run()

    def populate(self, row: Term, expand: Callable = None) -> Term:
        table = self.model.namespace.table
        query = r.table(self.join_table).get_all(
            row['id'], index=self.my_key
        ).coerce_to('array').map(
            lambda link: r.table(table).get(link[self.their_key])
        ).filter(lambda record: record.ne(None))
        if expand is None:
            return query
        return query.map(lambda record: record.merge(expand(record)))


def _points_back(declaration: RelationDeclaration, namespace: Namespace) -> bool:
    return declaration.kind in ('has_many', 'has_and_belongs_to_many') and \
        declaration.model_name == namespace.name

def resolve_owned(namespace: Namespace, database: Database) -> None:
    """First resolution pass: has_one and belongs_to declarations.
        Synthesizes the key column on this model. Raises ValueError for
        unknown models or colliding keys.
    """
    for property, declaration in namespace.declarations.items():
        if declaration.kind not in ('has_one', 'belongs_to'):
            continue

        target = database.get_model(declaration.model_name)
        if declaration.kind == 'has_one':
            key = f'{property}_{declaration.foreign_key}'
            relation = HasOne(property, target, key, declaration.foreign_key)
        else:
            key = '_'.join([
                _pascalcase_to_snake_case(target.__name__),
                property,
                declaration.foreign_key,
            ])
            relation = BelongsTo(property, target, key, declaration.foreign_key)

        namespace.add_key_property(key)
        namespace.add_relation(relation)
        if declaration.foreign_key != 'id':
            database.get_namespace(target).add_index(declaration.foreign_key)
        logger.debug('resolved %s.%s as %r', namespace.name, property, relation)

def resolve_collections(namespace: Namespace, database: Database) -> list[tuple[str, list[IndexSpec]]]:
    """Second resolution pass: has_many and has_and_belongs_to_many
        declarations. A has_many whose target declares a relation back
        to this model becomes many-to-many; the first such declaration
        on the target wins. Returns the join tables to create with
        their indexes. Raises ValueError for unknown models or
        colliding keys.
    """
    join_tables = []
    for property, declaration in namespace.declarations.items():
        if declaration.kind not in ('has_many', 'has_and_belongs_to_many'):
            continue

        target = database.get_model(declaration.model_name)
        target_namespace = database.get_namespace(target)
        reverse = None
        for other_property, other in target_namespace.declarations.items():
            if target is namespace.model and other_property == property:
                continue
            if _points_back(other, namespace):
                reverse = other_property
                break

        if reverse is None and declaration.kind == 'has_many':
            key = f'{_pascalcase_to_snake_case(namespace.name)}_{declaration.primary_key}'
            target_namespace.add_key_property(key)
            target_namespace.add_index(key)
            relation = HasMany(property, target, key, declaration.primary_key)
        else:
            sides = [f'{namespace.name}_{property}']
            if reverse is not None:
                sides.append(f'{target_namespace.name}_{reverse}')
            join_table = '__'.join(sorted(sides))
            my_key = f'{_pascalcase_to_snake_case(namespace.name)}_id'
            their_key = f'{_pascalcase_to_snake_case(target_namespace.name)}_id'
            if target is namespace.model and reverse is not None:
                my_key = f'{_pascalcase_to_snake_case(namespace.name)}_{property}_id'
                their_key = f'{_pascalcase_to_snake_case(namespace.name)}_{reverse}_id'
            elif target is namespace.model:
                their_key = f'{_pascalcase_to_snake_case(namespace.name)}_{property}_id'
            vert(my_key != their_key,
                f'join table {join_table} needs distinct keys for {namespace.name}.{property}')
            relation = ManyToMany(property, target, reverse, my_key, their_key, join_table)
            join_tables.append((join_table, [IndexSpec.parse(my_key), IndexSpec.parse(their_key)]))

        namespace.add_relation(relation)
        logger.debug('resolved %s.%s as %r', namespace.name, property, relation)
    return join_tables
