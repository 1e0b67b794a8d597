from context import errors, query, shapes, terms
import unittest


Op = shapes.Op
Shape = shapes.Shape
r = terms.r


class TestShapes(unittest.TestCase):
    def test_op_from_method(self):
        assert Op.from_method('get_all') is Op.GET_ALL
        assert Op.from_method('and_') is Op.AND
        assert Op.from_method('not_') is Op.NOT
        assert Op.from_method('nonsense') is None

    def test_transition_returns_following_shape(self):
        assert shapes.transition(Shape.ROOT, Op.TABLE) is Shape.TABLE
        assert shapes.transition(Shape.TABLE, Op.GET) is Shape.SINGLE_SELECTION
        assert shapes.transition(Shape.TABLE, Op.FILTER) is Shape.SELECTION
        assert shapes.transition(Shape.TABLE, Op.CHANGES) is Shape.STREAM

    def test_transition_raises_TransitionError_for_illegal_step(self):
        with self.assertRaises(errors.TransitionError) as e:
            shapes.transition(Shape.SELECTION, Op.GET)
        assert str(e.exception) == 'get cannot follow selection'
        with self.assertRaises(TypeError):
            shapes.transition(Shape.ROOT, Op.FILTER)


class TestQuery(unittest.TestCase):
    def test_chain_tracks_shapes(self):
        q = query.Query().table('things').filter({'a': 1}).pluck('a')
        assert [op for op, _, _ in q.ops] == [Op.TABLE, Op.FILTER, Op.PLUCK]
        assert len(q.shapes) == len(q.ops) + 1
        assert q.shapes[0] is Shape.ROOT
        assert q.shape is not Shape.SELECTION

    def test_verbs_never_mutate_the_receiver(self):
        base = query.Query().table('things')
        filtered = base.filter({'a': 1})
        limited = filtered.limit(2)
        assert filtered is not base
        assert len(base.ops) == 1
        assert len(filtered.ops) == 2
        assert len(limited.ops) == 3
        assert base.shape is Shape.TABLE

    def test_illegal_chain_raises_when_built(self):
        with self.assertRaises(errors.TransitionError):
            query.Query().table('things').filter({'a': 1}).get('x')
        with self.assertRaises(errors.TransitionError):
            query.Query().filter({'a': 1})

    def test_to_term_composes_expression_tree(self):
        term = query.Query().table('things').get('abc').to_term()
        assert isinstance(term, terms.Term)
        assert term.op is Op.GET
        assert term.args == ('abc',)
        assert term.receiver.op is Op.TABLE
        assert term.receiver.receiver is None

    def test_optargs_with_None_are_dropped(self):
        q = query.Query().table('things').order_by('a')
        _, _, optargs = q.ops[-1]
        assert 'index' not in optargs

    def test_callables_become_funcs(self):
        q = query.Query().table('things').filter(lambda doc: doc['a'] > 1)
        _, args, _ = q.ops[-1]
        assert isinstance(args[0], terms.Func)
        assert len(args[0].params) == 1
        assert args[0].body.op is Op.GT

    def test_with_notes_copies_notes(self):
        q = query.Query().table('things')
        noted = q.with_notes(flag=True)
        assert noted.notes == {'flag': True}
        assert q.notes == {}
        assert noted.filter({'a': 1}).notes == {'flag': True}

    def test_tap_filter_right_splices_before_projection(self):
        q = query.Query().table('things').filter({'a': 1}).pluck('a', 'deleted')
        tapped = q.tap_filter_right({'deleted': None})
        assert [op for op, _, _ in tapped.ops] == [
            Op.TABLE, Op.FILTER, Op.FILTER, Op.PLUCK
        ]
        assert tapped.ops[2][1] == ({'deleted': None},)
        assert tapped.shape is q.shape
        assert len(q.ops) == 3

    def test_tap_filter_right_appends_after_filterable_tail(self):
        q = query.Query().table('things').filter({'a': 1})
        tapped = q.tap_filter_right({'deleted': None})
        assert [op for op, _, _ in tapped.ops] == [Op.TABLE, Op.FILTER, Op.FILTER]

    def test_tap_filter_right_stays_before_changes(self):
        q = query.Query().table('things').changes()
        tapped = q.tap_filter_right({'deleted': None})
        assert [op for op, _, _ in tapped.ops] == [Op.TABLE, Op.FILTER, Op.CHANGES]

    def test_tap_filter_right_is_noop_for_unfilterable_chains(self):
        q = query.Query().table('things').insert({'a': 1})
        assert q.tap_filter_right({'deleted': None}) is q

        q = query.Query().table('things').get('abc')
        assert q.tap_filter_right({'deleted': None}) is q

    def test_replay_computes_shapes(self):
        q = query.Query().table('things').filter({'a': 1})
        assert query.Query.replay(q.ops) == q.shapes

    def test_term_operators_build_terms(self):
        doc = terms.Var()
        assert (doc['a'] == 1).op is Op.EQ
        assert (doc['a'] != 1).op is Op.NE
        assert (doc['a'] + 1).op is Op.ADD
        assert ((doc['a'] > 1) & (doc['b'] < 2)).op is Op.AND
        assert (~doc['a']).op is Op.NOT
        assert doc['a'].op is Op.BRACKET

    def test_terms_refuse_truth_testing(self):
        doc = terms.Var()
        with self.assertRaises(TypeError):
            bool(doc['a'] == 1)
        with self.assertRaises(TypeError):
            (doc['a'] == 1) and (doc['b'] == 2)
        with self.assertRaises(TypeError):
            not doc['a']
        with self.assertRaises(TypeError):
            query.Query().table('things').filter(
                lambda d: (d['a'] == 1) or (d['b'] == 2)
            )

    def test_operations_leave_apply_to_subclasses(self):
        assert terms.Operations._apply.__isabstractmethod__
        assert r.now().op is Op.NOW

    def test_root_terms_have_no_receiver(self):
        term = r.table('things')
        assert term.op is Op.TABLE
        assert term.receiver is None
        assert repr(r.now()) == 'r.now()'


if __name__ == '__main__':
    unittest.main()
