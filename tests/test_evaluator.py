from __future__ import annotations
from context import database, errors, evaluator, point, terms
from datetime import datetime, timezone
import unittest


class TestHelpers(unittest.TestCase):
    def test_sort_key_orders_types(self):
        values = ['b', 1, None, True, [1], {'a': 1}, 'a', 0.5]
        assert sorted(values, key=evaluator.sort_key) == [
            [1], True, None, 0.5, 1, {'a': 1}, 'a', 'b'
        ]
        with self.assertRaises(errors.QueryError):
            evaluator.sort_key(object())

    def test_pluck_and_without(self):
        document = {'id': 1, 'name': 'a', 'address': {'city': 'x', 'zip': 'y'}}
        assert evaluator.pluck(document, ['name', 'missing']) == {'name': 'a'}
        assert evaluator.pluck(document, [{'address': 'city'}]) == {
            'address': {'city': 'x'}
        }
        assert evaluator.without(document, ['id', {'address': 'zip'}]) == {
            'name': 'a', 'address': {'city': 'x'}
        }
        with self.assertRaises(errors.QueryError):
            evaluator.pluck('text', ['name'])

    def test_matches_subset(self):
        document = {'a': 1, 'b': {'c': 2, 'd': 3}}
        assert evaluator.matches_subset({'a': 1}, document)
        assert evaluator.matches_subset({'b': {'c': 2}}, document)
        assert not evaluator.matches_subset({'b': {'c': 3}}, document)
        with self.assertRaises(errors.NonExistenceError):
            evaluator.matches_subset({'e': 1}, document)

    def test_truthy(self):
        assert evaluator.truthy(0)
        assert evaluator.truthy('')
        assert not evaluator.truthy(False)
        assert not evaluator.truthy(None)


class TestEvaluator(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = database.Database()
        await self.db.connect()
        await self.db.query().table_create('things').run()
        self.things = self.db.query().table('things')
        await self.things.insert([
            {'id': 'a', 'name': 'alpha', 'kind': 'x', 'rank': 3, 'tags': ['red', 'blue']},
            {'id': 'b', 'name': 'beta', 'kind': 'y', 'rank': 1, 'tags': ['blue']},
            {'id': 'c', 'name': 'gamma', 'kind': 'x', 'rank': 2, 'tags': []},
        ]).run()

    async def asyncTearDown(self) -> None:
        await self.db.disconnect()

    async def test_table_administration(self):
        assert await self.db.query().table_list().run() == ['things']
        with self.assertRaises(errors.QueryError):
            await self.db.query().table_create('things').run()
        with self.assertRaises(errors.QueryError) as e:
            await self.db.query().table('nope').run()
        assert str(e.exception) == 'Table `nope` does not exist.'

        result = await self.db.query().table_drop('things').run()
        assert result == {'tables_dropped': 1}
        assert await self.db.query().table_list().run() == []

    async def test_insert_conflict_modes(self):
        result = await self.things.insert({'id': 'a', 'name': 'again'}).run()
        assert result['inserted'] == 0
        assert result['errors'] == 1
        assert result['first_error'].startswith('Duplicate primary key')

        result = await self.things.insert({'id': 'a', 'extra': 1}, conflict='update').run()
        assert result['replaced'] == 1
        document = await self.things.get('a').run()
        assert document['name'] == 'alpha' and document['extra'] == 1

        result = await self.things.insert({'id': 'a', 'name': 'only'}, conflict='replace').run()
        assert result['replaced'] == 1
        assert await self.things.get('a').run() == {'id': 'a', 'name': 'only'}

        result = await self.things.insert({'id': 'a', 'name': 'only'}, conflict='replace').run()
        assert result['unchanged'] == 1

        result = await self.things.insert({'name': 'new'}, return_changes=True).run()
        assert result['inserted'] == 1
        assert len(result['generated_keys']) == 1
        assert result['changes'][0]['new_val']['id'] == result['generated_keys'][0]

    async def test_update_replace_and_delete(self):
        result = await self.things.filter({'kind': 'x'}).update(
            lambda doc: {'rank': doc['rank'] + 10}
        ).run()
        assert result['replaced'] == 2
        assert (await self.things.get('a').run())['rank'] == 13

        result = await self.things.get('missing').update({'rank': 0}).run()
        assert result['skipped'] == 1

        result = await self.things.get('b').replace({'id': 'other'}).run()
        assert result['errors'] == 1

        result = await self.things.get('b').delete(return_changes=True).run()
        assert result['deleted'] == 1
        assert result['changes'][0]['old_val']['name'] == 'beta'
        assert await self.things.get('b').run() is None

    async def test_secondary_indexes(self):
        assert await self.things.index_create('rank').run() == {'created': 1}
        assert await self.things.index_create('tags', multi=True).run() == {'created': 1}
        assert await self.things.index_create('kind_rank', ['kind', 'rank']).run() == {'created': 1}
        with self.assertRaises(errors.QueryError):
            await self.things.index_create('rank').run()
        assert await self.things.index_list().run() == ['rank', 'tags', 'kind_rank']

        found = await self.things.get_all('blue', index='tags').run()
        assert sorted([d['id'] for d in found]) == ['a', 'b']
        found = await self.things.get_all(['x', 2], index='kind_rank').run()
        assert [d['id'] for d in found] == ['c']

        found = await self.things.between(1, 3, index='rank').order_by('rank').run()
        assert [d['id'] for d in found] == ['b', 'c']
        found = await self.things.between(
            1, 3, index='rank', left_bound='open', right_bound='closed'
        ).run()
        assert sorted([d['id'] for d in found]) == ['a', 'c']

        assert await self.things.index_rename('rank', 'position').run() == {'renamed': 1}
        assert 'position' in await self.things.index_list().run()
        with self.assertRaises(errors.QueryError):
            await self.things.get_all(1, index='rank').run()

        status = await self.things.index_status('tags').run()
        assert status[0]['multi'] and status[0]['ready']
        assert await self.things.index_drop('tags').run() == {'dropped': 1}

    async def test_get_all_and_order_by(self):
        found = await self.things.get_all('c', 'a', 'missing').run()
        assert [d['id'] for d in found] == ['c', 'a']

        ordered = await self.things.order_by('rank').pluck('name').run()
        assert ordered == [{'name': 'beta'}, {'name': 'gamma'}, {'name': 'alpha'}]
        ordered = await self.things.order_by(terms.r.desc('rank')).run()
        assert [d['id'] for d in ordered] == ['a', 'c', 'b']
        ordered = await self.things.order_by('kind', terms.r.desc('name')).run()
        assert [d['id'] for d in ordered] == ['c', 'a', 'b']

        await self.things.index_create('rank').run()
        ordered = await self.things.order_by(index=terms.r.desc('rank')).limit(2).run()
        assert [d['id'] for d in ordered] == ['a', 'c']

    async def test_filter_and_missing_fields(self):
        found = await self.things.filter(lambda doc: doc['rank'] > 1).run()
        assert sorted([d['id'] for d in found]) == ['a', 'c']

        found = await self.things.filter(lambda doc: doc['missing'] == 1).run()
        assert found == []
        found = await self.things.filter(
            lambda doc: doc['missing'] == 1, default=True
        ).run()
        assert len(found) == 3

        found = await self.things.filter(
            lambda doc: doc['tags'].contains('blue') & (doc['kind'] == 'x')
        ).run()
        assert [d['id'] for d in found] == ['a']

    async def test_default_catches_non_existence(self):
        chain = self.things.get('missing').bracket('name')
        with self.assertRaises(errors.NonExistenceError):
            await chain.run()
        assert await chain.default('anonymous').run() == 'anonymous'
        assert await self.things.get('a').bracket('name').default('x').run() == 'alpha'

        with self.assertRaises(errors.NonExistenceError):
            await self.things.filter({'kind': 'z'}).avg('rank').run()
        assert await self.things.filter({'kind': 'z'}).count().run() == 0

    async def test_aggregation_and_grouping(self):
        assert await self.things.count().run() == 3
        assert await self.things.sum('rank').run() == 6
        assert await self.things.avg('rank').run() == 2
        assert (await self.things.max('rank').run())['id'] == 'a'
        assert (await self.things.min('rank').run())['id'] == 'b'
        assert await self.things.map(lambda doc: doc['rank']).reduce(
            lambda a, b: a + b
        ).run() == 6

        grouped = await self.things.group('kind').count().ungroup().run()
        assert grouped == [
            {'group': 'x', 'reduction': 2},
            {'group': 'y', 'reduction': 1},
        ]
        grouped = await self.things.group('kind').ungroup().run()
        assert [len(g['reduction']) for g in grouped] == [2, 1]

        kinds = await self.things.bracket('kind').distinct().run()
        assert kinds == ['x', 'y']

    async def test_joins(self):
        await self.db.query().table_create('kinds').run()
        kinds = self.db.query().table('kinds')
        await kinds.insert([
            {'id': 'x', 'label': 'ex'},
            {'id': 'y', 'label': 'why'},
        ]).run()

        joined = await self.things.eq_join('kind', kinds).zip().order_by('name').run()
        assert [(d['name'], d['label']) for d in joined] == [
            ('alpha', 'ex'), ('beta', 'why'), ('gamma', 'ex')
        ]

        joined = await self.things.outer_join(
            kinds, lambda thing, kind: thing['rank'] == 3
        ).run()
        assert len(joined) == 4
        assert [j for j in joined if 'right' not in j][0]['left']['id'] == 'b'

    async def test_branch_evaluates_one_side(self):
        chain = self.db.query().branch(False, terms.r.error('boom'), 'fine')
        assert await chain.run() == 'fine'

        chain = self.db.query().branch(True, terms.r.error('boom'), 'fine')
        with self.assertRaises(errors.QueryError) as e:
            await chain.run()
        assert str(e.exception) == 'boom'

        chain = self.things.get('a').do(
            lambda doc: terms.r.branch(doc['rank'] > 2, 'high', 'low')
        )
        assert await chain.run() == 'high'

    async def test_geo_get_nearest(self):
        await self.db.query().table_create('places').run()
        places = self.db.query().table('places')
        await places.index_create('location', geo=True).run()
        await places.insert([
            {'id': 'origin', 'location': point.Point(0, 0)},
            {'id': 'near', 'location': point.Point(0, 1)},
            {'id': 'far', 'location': point.Point(10, 10)},
        ]).run()

        found = await places.get_nearest(
            point.Point(0, 0), index='location', max_dist=200_000
        ).run()
        assert [f['doc']['id'] for f in found] == ['origin', 'near']
        assert found[0]['dist'] == 0
        assert 110_000 < found[1]['dist'] < 112_000
        assert isinstance(found[1]['doc']['location'], point.Point)

        with self.assertRaises(errors.QueryError):
            await self.things.get_nearest(point.Point(0, 0), index='id').run()

    async def test_values_survive_storage(self):
        when = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        await self.things.insert({
            'id': 'typed', 'when': when, 'nested': {'list': [1, 2.5, None, True]},
        }).run()
        document = await self.things.get('typed').run()
        assert document['when'] == when
        assert document['nested'] == {'list': [1, 2.5, None, True]}

        year = await self.things.get('typed').bracket('when').year().run()
        assert year == 2024

    async def test_root_expressions(self):
        assert await self.db.query().expr({'a': [1, 2]}).run() == {'a': [1, 2]}
        assert await self.db.query().range(3).run() == [0, 1, 2]
        assert isinstance(await self.db.query().now().run(), datetime)
        assert await self.db.query().object('a', 1, 'b', 2).run() == {'a': 1, 'b': 2}
        epoch = await self.db.query().epoch_time(0).to_iso8601().run()
        assert epoch == '1970-01-01T00:00:00+00:00'
        assert await self.db.query().expr('abc').upcase().run() == 'ABC'
        assert await self.db.query().expr([3, 1]).append(2).run() == [3, 1, 2]


if __name__ == '__main__':
    unittest.main()
