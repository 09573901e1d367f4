from context import collection, errors, interfaces, relations
from genericpath import isfile
from models import build_models, create_tables
from unittest import mock
import os
import sqlite3
import unittest


DB_FILEPATH = 'test.db'


class TestRelations(unittest.TestCase):
    db: sqlite3.Connection = None
    cursor: sqlite3.Cursor = None

    def setUp(self) -> None:
        """Set up the test database and rebuild the models."""
        try:
            if isfile(DB_FILEPATH):
                os.remove(DB_FILEPATH)
        except:
            ...
        self.db = sqlite3.connect(DB_FILEPATH)
        self.cursor = self.db.cursor()
        create_tables(self.cursor)
        self.registry, self.User, self.Post, self.Profile = build_models(DB_FILEPATH)
        self.database = self.registry.database
        return super().setUp()

    def tearDown(self) -> None:
        """Close cursor and delete test database."""
        self.cursor.close()
        self.db.close()
        os.remove(DB_FILEPATH)
        return super().tearDown()

    def seed(self) -> None:
        """Two users with three posts between them and a third user
            with nothing.
        """
        self.User.create_many([{'name': 'Al'}, {'name': 'Bo'}, {'name': 'Cy'}])
        self.Post.create_many([
            {'user_id': 1, 'title': 'first'},
            {'user_id': 2, 'title': 'second'},
            {'user_id': 1, 'title': 'third'},
        ])
        self.Profile.create({'user_id': 2, 'bio': 'hi'})

    def count_queries(self):
        return mock.patch.object(
            self.database, 'query_rows', wraps=self.database.query_rows
        )

    # descriptor tests
    def test_Relation_implements_RelationProtocol(self):
        relation = self.registry.relation(self.User, 'posts')
        assert isinstance(relation, interfaces.RelationProtocol)

    def test_Relation_raises_TypeError_for_invalid_fields(self):
        with self.assertRaises(TypeError) as e:
            relations.HasMany('Post', 'user_id', 'id')
        assert str(e.exception) == 'related must be a model class'

        with self.assertRaises(TypeError) as e:
            relations.HasMany(self.Post, b'user_id', 'id')
        assert str(e.exception) == 'foreign_key must be str'

        with self.assertRaises(ValueError):
            relations.RelationDeclaration('many_to_many', 'Post')

    def test_Relation_bind_returns_a_bound_copy(self):
        relation = self.registry.relation(self.User, 'posts')
        user = self.User({'id': 1, 'name': 'Al'})
        bound = relation.bind(user)
        assert bound.parent is user
        assert relation.parent is None
        assert bound == relation

        with self.assertRaises(TypeError) as e:
            relation.bind('not a model')
        assert str(e.exception) == 'model must implement ModelProtocol'

        with self.assertRaises(errors.UsageError) as e:
            relation.owner_value()
        assert str(e.exception) == 'HasMany is not bound to a parent'

    def test_Relation_query_filters_on_the_related_key(self):
        user = self.User({'id': 7, 'name': 'Al'})
        statement = user.relation('posts').query().to_sql()
        assert statement.sql == 'SELECT * FROM posts WHERE posts.deleted_at IS NULL ' + \
            'AND (posts.user_id = ?)'
        assert statement.params == (7,)

        post = self.Post({'id': 1, 'user_id': 3})
        statement = post.relation('user').query().to_sql()
        assert statement.sql == 'SELECT * FROM users WHERE users.id = ?'
        assert statement.params == (3,)

        with self.assertRaises(errors.UsageError):
            self.User({'name': 'unsaved'}).relation('posts').query()

    # eager loading tests
    def test_belongs_to_eager_load_uses_one_query_per_relation(self):
        self.seed()
        with self.count_queries() as query_rows:
            posts = self.Post.with_('user').order_by('id').get()
        assert query_rows.call_count == 2

        assert len(posts) == 3
        for post in posts:
            users = post.relations['user']
            assert isinstance(users, collection.Collection)
            assert len(users) == 1
            assert users[0].id == post.user_id
            assert users[0].persisted
        assert [p.relations['user'][0].name for p in posts] == ['Al', 'Bo', 'Al']

        relation_query = query_rows.call_args_list[1][0][0]
        assert relation_query.sql == 'SELECT * FROM users WHERE users.id IN (?, ?)'
        assert relation_query.params == (1, 2)

    def test_has_many_eager_load_attaches_a_Collection_to_every_row(self):
        self.seed()
        with self.count_queries() as query_rows:
            users = self.User.with_('posts', 'profile').order_by('id').get()
        assert query_rows.call_count == 3

        assert [[p.title for p in u.relations['posts']] for u in users] == [
            ['first', 'third'], ['second'], []
        ]
        assert [len(u.relations['profile']) for u in users] == [0, 1, 0]
        assert users[1].relations['profile'][0].bio == 'hi'

        # attribute access reads the eager-loaded value without a query
        with self.count_queries() as query_rows:
            assert [p.title for p in users[0].posts] == ['first', 'third']
        assert query_rows.call_count == 0

    def test_eager_load_Collections_are_not_shared_between_rows(self):
        self.seed()
        posts = self.Post.with_('user').where('user_id', 1).get()
        first, third = posts
        assert first.relations['user'] == third.relations['user']
        assert first.relations['user'] is not third.relations['user']

    def test_eager_load_without_parent_rows_issues_no_relation_query(self):
        with self.count_queries() as query_rows:
            users = self.User.with_('posts').get()
        assert len(users) == 0
        assert query_rows.call_count == 1

    def test_eager_load_without_key_values_issues_no_relation_query(self):
        self.Post.create({'title': 'orphan'})
        with self.count_queries() as query_rows:
            posts = self.Post.with_('user').get()
        assert query_rows.call_count == 1
        assert posts[0].relations['user'] == []

    def test_eager_load_applies_the_related_soft_delete_scope(self):
        self.seed()
        self.Post.where('title', 'first').delete()
        users = self.User.with_('posts').order_by('id').get()
        assert [p.title for p in users[0].relations['posts']] == ['third']

    def test_with_registers_each_relation_once(self):
        query = self.User.with_('posts').with_('posts', 'profile')
        assert [e.name for e in query.eager_loads] == ['posts', 'profile']

    # lazy loading tests
    def test_lazy_load_queries_once_and_caches(self):
        self.seed()
        user = self.User.find(1)
        with self.count_queries() as query_rows:
            assert [p.title for p in user.posts] == ['first', 'third']
            assert [p.title for p in user.posts] == ['first', 'third']
        assert query_rows.call_count == 1

        post = self.Post.find(2)
        assert post.user.first().name == 'Bo'

        unsaved = self.User({'name': 'new'})
        with self.count_queries() as query_rows:
            assert unsaved.load('posts') == []
        assert query_rows.call_count == 0

    # persistence tests
    def test_HasMany_save_attaches_the_child(self):
        user = self.User.create({'name': 'Al'})
        post = self.Post({'title': 'hello'})
        assert user.relation('posts').save(post) is post
        assert post.user_id == user.id
        assert post.persisted
        assert [p.title for p in self.Post.where('user_id', user.id).get()] == ['hello']

        with self.assertRaises(TypeError) as e:
            user.relation('posts').save(self.Profile({'bio': 'x'}))
        assert str(e.exception) == 'model must be instance of Post'

        with self.assertRaises(errors.UsageError):
            self.User({'name': 'unsaved'}).relation('posts').save(self.Post({'title': 'x'}))

    def test_HasOne_save_attaches_the_child(self):
        user = self.User.create({'name': 'Al'})
        profile = user.relation('profile').save(self.Profile({'bio': 'bio'}))
        assert profile.user_id == user.id
        assert self.User.with_('profile').first().relations['profile'][0].bio == 'bio'

    def test_BelongsTo_associate_and_dissociate(self):
        al = self.User.create({'name': 'Al'})
        bo = self.User.create({'name': 'Bo'})
        post = self.Post.create({'title': 'moving', 'user_id': al.id})

        assert post.relation('user').associate(bo) is post
        assert self.Post.find(post.id).user_id == bo.id

        assert post.relation('user').dissociate() is post
        assert self.Post.find(post.id).user_id is None

        with self.assertRaises(errors.UsageError):
            post.relation('user').associate(self.User({'name': 'unsaved'}))


if __name__ == '__main__':
    unittest.main()
