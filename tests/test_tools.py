from context import errors, point, tools
from packify import UsageError
import unittest


class TestTools(unittest.TestCase):
    def test_pascalcase_to_snake_case(self):
        assert tools._pascalcase_to_snake_case('Character') == 'character'
        assert tools._pascalcase_to_snake_case('BlogPost') == 'blog_post'
        assert tools._pascalcase_to_snake_case('A') == 'a'

    def test_get_path_follows_dotted_path(self):
        document = {'a': {'b': {'c': 3}}, 'd': 4}
        assert tools._get_path(document, 'a.b.c') == 3
        assert tools._get_path(document, 'd') == 4
        with self.assertRaises(KeyError):
            tools._get_path(document, 'a.x')
        with self.assertRaises(KeyError):
            tools._get_path(document, 'd.e')

    def test_get_index_name_uses_single_top_level_property(self):
        assert tools.get_index_name(['email']) == 'email'
        assert tools.get_index_name(('email',), 'by_email') == 'by_email'

    def test_get_index_name_requires_name_for_nested_or_compound(self):
        with self.assertRaises(ValueError) as e:
            tools.get_index_name(['address.city'])
        assert str(e.exception) == 'Index name missing for nested property ' + \
            'address.city. Please add a name to this index definition.'

        with self.assertRaises(ValueError):
            tools.get_index_name(['first', 'last'])
        assert tools.get_index_name(['first', 'last'], 'full_name') == 'full_name'

    def test_get_index_name_raises_TypeError_for_invalid_properties(self):
        with self.assertRaises(TypeError):
            tools.get_index_name('email')
        with self.assertRaises(TypeError):
            tools.get_index_name([1])


class TestErrors(unittest.TestCase):
    def test_helpers_raise_the_right_errors(self):
        errors.tert(True, 'fine')
        errors.vert(True, 'fine')
        errors.tressa(True, 'fine')
        with self.assertRaises(TypeError) as e:
            errors.tert(False, 'bad type')
        assert str(e.exception) == 'bad type'
        with self.assertRaises(ValueError):
            errors.vert(False, 'bad value')
        with self.assertRaises(UsageError):
            errors.tressa(False, 'bad usage')

    def test_uniqueness_violation_error_message(self):
        error = errors.UniquenessViolationError('User', 'email')
        assert isinstance(error, ValueError)
        assert error.model_name == 'User'
        assert error.property_name == 'email'
        assert str(error) == "'User.email' must be unique"

    def test_error_hierarchy(self):
        assert issubclass(errors.TransitionError, TypeError)
        assert issubclass(errors.NonExistenceError, errors.QueryError)


class TestPoint(unittest.TestCase):
    def test_parse_accepts_supported_forms(self):
        expected = point.Point(-122.4, 37.8)
        assert point.Point.parse(expected) is expected
        assert point.Point.parse([-122.4, 37.8]) == expected
        assert point.Point.parse((-122.4, 37.8)) == expected
        assert point.Point.parse(
            {'type': 'Point', 'coordinates': [-122.4, 37.8]}
        ) == expected
        assert point.Point.parse(expected.to_reql()) == expected

    def test_to_reql_marks_geometry(self):
        reql = point.Point(1, 2).to_reql()
        assert reql['$reql_type$'] == 'GEOMETRY'
        assert reql['coordinates'] == [1, 2]

    def test_invalid_coordinates_raise_errors(self):
        with self.assertRaises(ValueError):
            point.Point(181, 0)
        with self.assertRaises(ValueError):
            point.Point(0, -91)
        with self.assertRaises(TypeError):
            point.Point('1', 2)

    def test_distance_in_meters(self):
        origin = point.Point(0, 0)
        assert origin.distance(origin) == 0
        # one degree of latitude is about 111.2 km
        distance = origin.distance(point.Point(0, 1))
        assert 111_000 < distance < 111_400

    def test_point_is_iterable_and_hashable(self):
        p = point.Point(3, 4)
        assert list(p) == [3, 4]
        assert len({p, point.Point(3, 4)}) == 1


if __name__ == '__main__':
    unittest.main()
