from context import collection
import unittest


class Item:
    """Stand-in exposing the model lookup surface used by pluck."""
    def __init__(self, data: dict, relations: dict = {}) -> None:
        self.data = data
        self.relations = relations

    def attribute(self, name: str):
        if name in self.relations:
            return self.relations[name]
        return self.data.get(name)


class TestCollection(unittest.TestCase):
    def test_Collection_behaves_like_a_sequence(self):
        items = collection.Collection([1, 2, 3])
        assert len(items) == 3
        assert items.count() == 3
        assert list(items) == [1, 2, 3]
        assert items[0] == 1 and items[-1] == 3
        assert 2 in items
        assert items == [1, 2, 3]
        assert items == (1, 2, 3)
        assert items == collection.Collection([1, 2, 3])
        assert items != [3, 2, 1]
        assert items != 'not a collection'

        sliced = items[1:]
        assert isinstance(sliced, collection.Collection)
        assert sliced == [2, 3]

        items[0] = 9
        del items[1]
        assert items.to_list() == [9, 3]

    def test_Collection_push_append_first(self):
        items = collection.Collection()
        assert items.is_empty() and not items
        assert items.first() is None
        assert items.first('default') == 'default'
        assert items.push(1, 2) is items
        items.append(3)
        assert items == [1, 2, 3]
        assert items.first() == 1

    def test_Collection_copies_its_input(self):
        source = [1, 2]
        items = collection.Collection(source)
        items.push(3)
        assert source == [1, 2]

        with self.assertRaises(TypeError) as e:
            collection.Collection(123)
        assert str(e.exception) == 'items must be iterable'

    def test_pluck_follows_dotted_paths(self):
        users = collection.Collection([
            Item({'id': 1, 'name': 'Al'}, {'posts': collection.Collection([
                Item({'title': 'a'}), Item({'title': 'b'}),
            ])}),
            Item({'id': 2, 'name': 'Bo'}, {'posts': collection.Collection()}),
        ])
        assert users.pluck('name') == ['Al', 'Bo']
        assert users.pluck('posts.0.title') == ['a', None]
        assert users.pluck('posts.*.title') == [['a', 'b'], []]
        assert users.pluck('missing.deeper') == [None, None]

    def test_pluck_reads_dicts_rows_and_lists(self):
        items = collection.Collection([
            {'meta': {'tags': ['x', 'y']}},
            collection.Row({'meta': {'tags': ['z']}}),
            None,
        ])
        assert items.pluck('meta.tags.1') == ['y', None, None]
        assert items.pluck('meta.tags.*') == [['x', 'y'], ['z'], None]

        with self.assertRaises(TypeError):
            items.pluck(['meta'])


if __name__ == '__main__':
    unittest.main()
