from __future__ import annotations
from .classes import Model, hybridmethod, trait_chain
from .errors import tert, vert, tressa
from .interfaces import AsyncDocumentStoreProtocol
from .namespace import Namespace
from .query import Query
from .relations import resolve_collections, resolve_owned
from .store import SqliteDocumentStore
from .terms import Term
from inspect import isawaitable
from types import TracebackType
from typing import Any, Optional, Type
import logging


logger = logging.getLogger(__name__)


def _shadows_model(name: str) -> bool:
    return hasattr(Model, name) or name in Model.__annotations__


class Database:
    """Registry of models bound to one document store. Register the
        model classes, then `connect()` to resolve their relations and
        create their tables and indexes. Can be used as an async
        context manager.
    """
    connection_info: str = ':memory:'
    store_class: Type[AsyncDocumentStoreProtocol] = SqliteDocumentStore
    store: AsyncDocumentStoreProtocol
    models: dict[str, Type[Model]]
    connected: bool

    def __init__(self, connection_info: str = '',
                 store: AsyncDocumentStoreProtocol = None) -> None:
        """Initialize the instance. Raises TypeError for invalid
            connection_info or store.
        """
        if not connection_info:
            connection_info = self.connection_info
        tert(type(connection_info) is str, 'connection_info must be str')
        if store is None:
            store = self.store_class(connection_info)
        tert(isinstance(store, AsyncDocumentStoreProtocol),
            'store must implement AsyncDocumentStoreProtocol')
        self.connection_info = connection_info
        self.store = store
        self.models = {}
        self.connected = False

    def __repr__(self) -> str:
        return f'Database(connection_info={self.connection_info!r}, ' + \
            f'models={list(self.models)})'

    def register(self, *models: Type[Model]) -> Database:
        """Build the namespace of each model and bind the model to this
            Database. Return self in monad pattern. Raises TypeError
            for non-Model classes, ValueError for duplicate names or
            schema properties shadowing Model attributes, or UsageError
            if already connected.
        """
        tressa(not self.connected, 'models must be registered before connect')
        for model in models:
            tert(isinstance(model, type) and issubclass(model, Model),
                'models must be subclasses of Model')
            vert(model.__name__ not in self.models,
                f'a model named {model.__name__} is already registered')

            namespace = Namespace.build(model, trait_chain(model))
            for name in namespace.schema:
                vert(not _shadows_model(name),
                    f'schema property {model.__name__}.{name} shadows a Model attribute')

            model.namespace = namespace
            model.database = self
            model.query_class = type(
                f'{model.__name__}Query', (Query,), dict(namespace.query_methods)
            )
            for name, function in namespace.methods.items():
                if not isinstance(Model.__dict__.get(name), hybridmethod):
                    setattr(model, name, function)
            for name in namespace.schema:
                setattr(model, name, Model.create_property(name))

            self.models[model.__name__] = model
            logger.info('registered %s on table %s', model.__name__, namespace.table)
        return self

    def get_model(self, name: str) -> Type[Model]:
        """Raises ValueError if no model by that name is registered."""
        vert(name in self.models, f'model {name} is not registered')
        return self.models[name]

    def get_namespace(self, model: Type[Model]|str) -> Namespace:
        if type(model) is str:
            model = self.get_model(model)
        vert(self.models.get(model.__name__) is model,
            f'model {model.__name__} is not registered')
        return model.namespace

    async def connect(self) -> Database:
        """Open the store and resolve every registered model: relations
            are resolved, then tables, join tables, and indexes are
            created and setup hooks run. Return self in monad pattern.
            Raises ValueError for invalid relations or indexes.
        """
        if self.connected:
            return self
        await self.store.connect()
        namespaces = [model.namespace for model in self.models.values()]

        for namespace in namespaces:
            resolve_owned(namespace, self)
        join_tables = {}
        for namespace in namespaces:
            for table, indexes in resolve_collections(namespace, self):
                join_tables[table] = indexes

        for namespace in namespaces:
            await self.store.ensure_table(namespace.table)
        for table, indexes in join_tables.items():
            await self.store.ensure_table(table)
            for index in indexes:
                await self.store.ensure_index(table, index.name, index.properties)

        for namespace in namespaces:
            for hook in namespace.hooks['setup']:
                result = hook(namespace)
                if isawaitable(result):
                    await result

        for namespace in namespaces:
            for index in namespace.indexes:
                for name in index.properties:
                    top = name.split('.')[0]
                    vert(top == 'id' or top in namespace.schema,
                        f'index {index.name} of {namespace.name} uses undeclared property {name}')
                await self.store.ensure_index(
                    namespace.table, index.name, index.properties, index.multi, index.geo
                )

            for relation in namespace.relations():
                vert(not _shadows_model(relation.property),
                    f'relation {namespace.name}.{relation.property} shadows a Model attribute')
                setattr(namespace.model, relation.property, relation.create_property())
            for name in namespace.key_properties():
                setattr(namespace.model, name, Model.create_property(name))
            namespace.resolved = True

        self.connected = True
        logger.info('connected %d models to %s', len(namespaces), self.connection_info)
        return self

    async def disconnect(self) -> None:
        """Close the store and all live subscriptions."""
        await self.store.close()
        self.connected = False
        logger.info('disconnected from %s', self.connection_info)

    async def teardown(self) -> None:
        """Drop every table in the store."""
        for table in await self.store.table_list():
            await self.store.drop_table(table)

    def query(self) -> Query:
        """Returns an unbound query chain on this Database. Results are
            not wrapped in models and model hooks do not apply.
        """
        return Query(database=self)

    async def execute(self, term: Term) -> Any:
        logger.debug('executing %r', term)
        return await self.store.execute(term)

    async def __aenter__(self) -> Database:
        return await self.connect()

    async def __aexit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        await self.disconnect()
