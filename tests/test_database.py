from __future__ import annotations
from context import classes, database, errors, interfaces, query, store
from packify import UsageError
import unittest


class TestDatabase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        # rebuild test classes because registration binds them
        class Thing(classes.Model):
            schema = {'name': str, 'rank': int}
            indexes = ('rank',)

        class Other(classes.Model):
            table = 'others'
            schema = {'label': str}

        self.Thing, self.Other = Thing, Other
        self.db = database.Database()

    async def asyncTearDown(self) -> None:
        await self.db.disconnect()

    def test_init_raises_errors_for_invalid_arguments(self):
        with self.assertRaises(TypeError):
            database.Database(123)
        with self.assertRaises(TypeError):
            database.Database(store='not a store')
        assert isinstance(self.db.store, interfaces.AsyncDocumentStoreProtocol)
        assert isinstance(self.db.store, store.SqliteDocumentStore)

    def test_register_binds_models(self):
        assert self.db.register(self.Thing, self.Other) is self.db
        assert self.db.models == {'Thing': self.Thing, 'Other': self.Other}
        assert self.Thing.database is self.db
        assert self.Thing.namespace.table == 'Thing'
        assert self.Other.namespace.table == 'others'
        assert issubclass(self.Thing.query_class, query.Query)
        assert self.Thing.query_class.__name__ == 'ThingQuery'

        assert self.db.get_model('Thing') is self.Thing
        assert self.db.get_namespace('Other') is self.Other.namespace
        assert self.db.get_namespace(self.Thing) is self.Thing.namespace

    def test_register_raises_errors(self):
        with self.assertRaises(TypeError):
            self.db.register(dict)
        with self.assertRaises(TypeError):
            self.db.register('Thing')

        self.db.register(self.Thing)
        with self.assertRaises(ValueError) as e:
            self.db.register(self.Thing)
        assert str(e.exception) == 'a model named Thing is already registered'

        class Shadow(classes.Model):
            schema = {'save': str}

        with self.assertRaises(ValueError):
            self.db.register(Shadow)

        class ShadowData(classes.Model):
            schema = {'data': dict}

        with self.assertRaises(ValueError):
            self.db.register(ShadowData)

        with self.assertRaises(ValueError):
            self.db.get_model('Missing')
        with self.assertRaises(ValueError):
            self.db.get_namespace(self.Other)

    async def test_register_after_connect_raises_usage_error(self):
        self.db.register(self.Thing)
        await self.db.connect()
        with self.assertRaises(UsageError):
            self.db.register(self.Other)

    async def test_connect_creates_tables_and_indexes(self):
        self.db.register(self.Thing, self.Other)
        assert await self.db.connect() is self.db
        assert self.db.connected
        assert await self.db.connect() is self.db

        assert await self.db.store.table_list() == ['Thing', 'others']
        assert self.db.store.index_list('Thing') == ['rank']
        assert self.Thing.namespace.resolved

    async def test_connect_rejects_indexes_on_undeclared_properties(self):
        class Broken(classes.Model):
            schema = {'name': str}
            indexes = ('nope',)

        self.db.register(Broken)
        with self.assertRaises(ValueError):
            await self.db.connect()

    async def test_disconnect_and_teardown(self):
        self.db.register(self.Thing)
        await self.db.connect()
        await self.Thing({'name': 'thing'}).save()

        await self.db.teardown()
        assert await self.db.store.table_list() == []

        await self.db.disconnect()
        assert not self.db.connected
        with self.assertRaises(UsageError):
            await self.db.store.table_list()

    async def test_async_context_manager(self):
        self.db.register(self.Thing)
        async with self.db as db:
            assert db is self.db
            assert db.connected
            thing = await self.Thing({'name': 'thing'}).save()
            assert (await self.Thing.get(thing.id).run()).name == 'thing'
        assert not self.db.connected

    async def test_query_and_execute(self):
        self.db.register(self.Thing)
        await self.db.connect()
        chain = self.db.query().table('Thing').insert({'id': 'a', 'name': 'raw'})
        assert chain.model is None
        assert (await chain.run())['inserted'] == 1

        result = await self.db.execute(self.db.query().table('Thing').get('a').to_term())
        assert result == {'id': 'a', 'name': 'raw'}

        with self.assertRaises(UsageError):
            await self.db.query().run()
        with self.assertRaises(errors.QueryError):
            await self.db.query().table('Missing').run()


if __name__ == '__main__':
    unittest.main()
