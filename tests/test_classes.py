from __future__ import annotations
from context import classes, cursor, database, point, query, relations, shapes
from datetime import datetime, timezone
from packify import UsageError
import json
import unittest


class RecordingDatabase(database.Database):
    """Keeps every term it executes."""
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.terms = []

    async def execute(self, term):
        self.terms.append(term)
        return await super().execute(term)


class TestModel(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        # rebuild test classes because properties will be changed in tests
        class Thing(classes.Model):
            schema = {
                'name': {'type': str, 'allow_null': False},
                'score': int,
                'ratio': float,
                'labels': {'type': [str], 'default': list},
                'born': datetime,
                'location': point.Point,
                'meta': dict,
            }

        class Weapon(classes.Model):
            schema = {'name': str}

        class Character(classes.Model):
            table = 'characters'
            schema = {'name': str, 'age': int}
            relations = {'equipped_weapon': relations.has_one('Weapon')}

        self.Thing = Thing
        self.Weapon = Weapon
        self.Character = Character
        self.db = RecordingDatabase()
        self.db.register(Thing, Weapon, Character)
        await self.db.connect()

    async def asyncTearDown(self) -> None:
        await self.db.disconnect()

    def test_construction_applies_defaults_and_coerces(self):
        thing = self.Thing({'name': 'thing', 'score': '3', 'born': '2020-01-02T03:04:05'})
        assert thing.name == 'thing'
        assert thing.score == 3
        assert thing.labels == []
        assert thing.born == datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert thing.id is None
        assert thing.is_new
        assert thing.is_dirty

    def test_set_records_old_values_and_pending_update(self):
        thing = self.Thing({'name': 'first'})
        thing._clean()
        thing.name = 'second'
        thing.name = 'third'
        assert thing.old_values == {'name': 'first'}
        assert thing.pending_update == {'name': 'third'}

    def test_set_raises_errors_for_invalid_values(self):
        thing = self.Thing({'name': 'thing'})
        with self.assertRaises(ValueError) as e:
            thing.set('nope', 1)
        assert str(e.exception) == 'Thing has no property nope'
        with self.assertRaises(ValueError):
            thing.name = None
        with self.assertRaises(TypeError):
            thing.labels = 'not a list'
        with self.assertRaises(TypeError):
            self.Thing('not a dict')

    async def test_construction_before_connect_raises_UsageError(self):
        class Loose(classes.Model):
            schema = {'name': str}

        db = database.Database()
        db.register(Loose)
        with self.assertRaises(UsageError):
            Loose({'name': 'x'})

    async def test_save_and_get_round_trip(self):
        data = {
            'name': 'thing',
            'score': 3,
            'ratio': 0.5,
            'labels': ['x', 'y'],
            'born': datetime(2020, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
            'location': point.Point(-122.4, 37.8),
            'meta': {'a': {'b': 1}},
        }
        thing = await self.Thing(data).save()
        assert type(thing.id) is str and len(thing.id) == 32
        assert not thing.is_new
        assert not thing.is_dirty

        found = await self.Thing.get(thing.id).run()
        assert isinstance(found, self.Thing)
        assert found is not thing
        assert found.id == thing.id
        for name, value in data.items():
            assert found.data[name] == value, name

    async def test_update_payload_contains_only_reassigned_properties(self):
        thing = await self.Thing({'name': 'thing', 'score': 1, 'ratio': 0.1}).save()

        self.db.terms.clear()
        await thing.save()
        assert not [t for t in self.db.terms if t.op is shapes.Op.UPDATE]

        thing.score = 2
        await thing.save()
        updates = [t for t in self.db.terms if t.op is shapes.Op.UPDATE]
        assert len(updates) == 1
        assert updates[0].args[0] == {'score': 2}
        assert thing.pending_update == {}

        found = await self.Thing.get(thing.id).run()
        assert found.score == 2
        assert found.ratio == 0.1

    async def test_insert_requires_non_nullable_values(self):
        thing = self.Thing()
        with self.assertRaises(ValueError) as e:
            await thing.save()
        assert str(e.exception) == 'Thing.name cannot be null'
        assert thing.is_new

    async def test_update_with_updates_and_errors(self):
        thing = await self.Thing({'name': 'thing'}).save()
        await thing.update({'name': 'renamed', 'score': 5})
        found = await self.Thing.get(thing.id).run()
        assert found.name == 'renamed'
        assert found.score == 5

        with self.assertRaises(TypeError):
            await thing.update('name')
        with self.assertRaises(UsageError):
            await self.Thing({'name': 'new'}).update({'score': 1})

    async def test_reload_discards_pending_changes(self):
        thing = await self.Thing({'name': 'thing'}).save()
        thing.name = 'changed'
        await thing.reload()
        assert thing.name == 'thing'
        assert not thing.is_dirty

        with self.assertRaises(UsageError):
            await self.Thing({'name': 'unsaved'}).reload()

    async def test_delete_removes_record(self):
        thing = await self.Thing({'name': 'thing'}).save()
        await thing.delete()
        assert await self.Thing.get(thing.id).run() is None

        # unsaved instances are ignored
        await self.Thing({'name': 'unsaved'}).delete()

    async def test_hybrid_methods_resolve_to_chain_verbs_on_the_class(self):
        insert = self.Thing.insert
        assert isinstance(insert.__self__, query.Query)
        result = await self.Thing.insert({'id': 'abc', 'name': 'thing'}).run()
        assert result['inserted'] == 1

        result = await self.Thing.filter({'name': 'thing'}).update({'score': 9}).run()
        assert result['replaced'] == 1
        assert (await self.Thing.get('abc').run()).score == 9

        result = await self.Thing.get('abc').delete().run()
        assert result['deleted'] == 1

    def test_metaclass_exposes_table_verbs(self):
        chain = self.Thing.filter({'name': 'x'})
        assert isinstance(chain, query.Query)
        assert chain.model is self.Thing
        assert chain.shape is shapes.Shape.SELECTION
        assert isinstance(self.Thing.order_by('name'), query.Query)

        with self.assertRaises(AttributeError):
            self.Thing.table_create
        with self.assertRaises(AttributeError):
            self.Thing.nonsense

    def test_query_filters_by_conditions(self):
        chain = self.Thing.query({'name': 'x'})
        assert [op for op, _, _ in chain.ops] == [shapes.Op.TABLE, shapes.Op.FILTER]
        assert chain.ops[0][1] == ('Thing',)
        assert self.Character.query().ops[0][1] == ('characters',)
        with self.assertRaises(TypeError):
            self.Thing.query('name')

    async def test_responses_are_interpreted_by_shape(self):
        first = await self.Thing({'name': 'first', 'score': 1}).save()
        await self.Thing({'name': 'second', 'score': 2}).save()

        found = await self.Thing.get(first.id).run()
        assert isinstance(found, self.Thing)

        found = await self.Thing.filter({'score': 2}).run()
        assert type(found) is list and len(found) == 1
        assert isinstance(found[0], self.Thing)
        assert found[0].name == 'second'

        assert await self.Thing.count().run() == 2
        names = await self.Thing.order_by('name').pluck('name').run()
        assert names == [{'name': 'first'}, {'name': 'second'}]

        feed = await self.Thing.changes().run()
        assert isinstance(feed, cursor.ModelCursor)
        feed.close()

        everything = await self.Thing.run()
        assert len(everything) == 2

    async def test_serialize_includes_loaded_relations(self):
        weapon = await self.Weapon({'name': 'sword'}).save()
        character = self.Character({'name': 'hero', 'age': 20})
        character.equipped_weapon = weapon
        await character.save()

        serialized = character.serialize()
        assert serialized['id'] == character.id
        assert serialized['name'] == 'hero'
        assert serialized['equipped_weapon_id'] == weapon.id
        assert serialized['equipped_weapon'] == {'id': weapon.id, 'name': 'sword'}

    async def test_to_json_encodes_times_and_points(self):
        thing = self.Thing({
            'name': 'thing',
            'born': datetime(2020, 1, 2, tzinfo=timezone.utc),
            'location': [1, 2],
        })
        decoded = json.loads(thing.to_json())
        assert decoded['born'] == '2020-01-02T00:00:00+00:00'
        assert decoded['location'] == {'type': 'Point', 'coordinates': [1.0, 2.0]}
        assert decoded['id'] is None

    def test_generate_id_returns_hex_uuid(self):
        generated = self.Thing.generate_id()
        assert type(generated) is str and len(generated) == 32
        assert generated != self.Thing.generate_id()

    async def test_from_record_uses_cache(self):
        cache = {}
        first = self.Thing.from_record({'id': '1', 'name': 'thing'}, cache)
        second = self.Thing.from_record({'id': '1', 'name': 'other'}, cache)
        assert first is second
        assert 'Thing1' in cache
        assert not first.is_dirty


class TestModelHooks(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        class Secret(classes.Model):
            schema = {'name': str, 'code': str}

            def before_save(self, namespace):
                if self.data.get('code') == 'invalid':
                    raise ValueError('code is invalid')

            def serialize(self, payload):
                payload['code'] = '***'
                return payload

        class Vault(classes.Model):
            schema = {'label': str}
            relations = {'secrets': relations.has_many('Secret')}

        self.Secret, self.Vault = Secret, Vault
        self.db = database.Database()
        self.db.register(Secret, Vault)
        await self.db.connect()

    async def asyncTearDown(self) -> None:
        await self.db.disconnect()

    def test_serialize_hook_does_not_replace_serialize(self):
        assert self.Secret.serialize is classes.Model.serialize
        secret = self.Secret({'name': 'pin', 'code': '1234'})
        serialized = secret.serialize()
        assert serialized['name'] == 'pin'
        assert serialized['code'] == '***'
        assert secret.code == '1234'
        assert json.loads(secret.to_json())['code'] == '***'

    async def test_serialize_hook_applies_to_related_instances(self):
        vault = self.Vault({'label': 'main'})
        vault.secrets.add(self.Secret({'name': 'pin', 'code': '1234'}))
        await vault.save()

        serialized = vault.serialize()
        assert [s['code'] for s in serialized['secrets']] == ['***']

    async def test_failed_save_keeps_change_set(self):
        secret = await self.Secret({'name': 'pin', 'code': '1234'}).save()
        secret.name = 'card'
        secret.code = 'invalid'

        with self.assertRaises(ValueError):
            await secret.save()
        assert secret.pending_update == {'name': 'card', 'code': 'invalid'}
        assert secret.old_values == {'name': 'pin', 'code': '1234'}
        assert (await self.Secret.get(secret.id).run()).name == 'pin'

        secret.code = '5678'
        await secret.save()
        assert secret.pending_update == {}
        assert secret.old_values == {}
        assert (await self.Secret.get(secret.id).run()).name == 'card'


class TestSaveContext(unittest.IsolatedAsyncioTestCase):
    async def test_flush_runs_deferred_closures_in_order(self):
        context = classes.SaveContext()
        calls = []

        async def later():
            calls.append('async')

        context.defer(lambda: calls.append('sync'))
        context.defer(later)
        await context.flush()
        assert calls == ['sync', 'async']
        assert context.pending == []

    def test_stack_tracks_instances_by_identity(self):
        context = classes.SaveContext()
        item = object()
        context.push(item)
        assert context.is_saving(item)
        assert not context.is_saving(object())
        context.pop(item)
        assert not context.is_saving(item)


if __name__ == '__main__':
    unittest.main()
