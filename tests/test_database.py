from context import classes, errors, interfaces
from genericpath import isfile
from unittest import mock
import os
import sqlite3
import unittest


DB_FILEPATH = 'test.db'


class TestDatabase(unittest.TestCase):
    db: sqlite3.Connection = None
    cursor: sqlite3.Cursor = None
    database: classes.SqliteDatabase = None

    def setUp(self) -> None:
        """Set up the test database."""
        try:
            if isfile(DB_FILEPATH):
                os.remove(DB_FILEPATH)
        except:
            ...
        self.db = sqlite3.connect(DB_FILEPATH)
        self.cursor = self.db.cursor()
        self.cursor.execute('create table things (id integer primary key, ' +
            'name text, size integer)')
        self.database = classes.SqliteDatabase(DB_FILEPATH)
        return super().setUp()

    def tearDown(self) -> None:
        """Close cursor and delete test database."""
        self.cursor.close()
        self.db.close()
        os.remove(DB_FILEPATH)
        return super().tearDown()

    def rows(self) -> list[tuple]:
        return self.cursor.execute('select id, name, size from things order by id').fetchall()

    # context manager tests
    def test_SqliteContext_implements_DBContextProtocol(self):
        assert issubclass(classes.SqliteContext, interfaces.DBContextProtocol)

    def test_SqliteContext_raises_errors_for_invalid_use(self):
        with self.assertRaises(TypeError) as e:
            with classes.SqliteContext({}):
                ...
        assert str(e.exception) == 'connection_info must be str or bytes'

        with self.assertRaises(errors.UsageError) as e:
            with classes.SqliteContext(''):
                ...
        assert 'empty connection_info' in str(e.exception)

    def test_SqliteContext_commits_on_success_and_rolls_back_on_error(self):
        with classes.SqliteContext(DB_FILEPATH) as cursor:
            cursor.execute("insert into things (name, size) values ('kept', 1)")

        with self.assertRaises(RuntimeError):
            with classes.SqliteContext(DB_FILEPATH) as cursor:
                cursor.execute("insert into things (name, size) values ('lost', 2)")
                raise RuntimeError('abort')

        assert [r[1] for r in self.rows()] == ['kept']

    # SqliteDatabase tests
    def test_SqliteDatabase_implements_DataAccessProtocol(self):
        assert isinstance(self.database, interfaces.DataAccessProtocol)

    def test_SqliteDatabase_raises_TypeError_for_invalid_parameters(self):
        with self.assertRaises(TypeError) as e:
            classes.SqliteDatabase(DB_FILEPATH, prefix=b'wp_')
        assert str(e.exception) == 'prefix must be str'

        with self.assertRaises(TypeError) as e:
            classes.SqliteDatabase(DB_FILEPATH, context_manager=dict)
        assert 'DBContextProtocol' in str(e.exception)

    def test_SqliteDatabase_falls_back_to_environment_config(self):
        env = {'CONNECTION_STRING': 'env.db', 'TABLE_PREFIX': 'env_'}
        with mock.patch.dict(os.environ, env):
            database = classes.SqliteDatabase()
            assert database.connection_info == 'env.db'
            assert database.prefix == 'env_'

            database = classes.SqliteDatabase(DB_FILEPATH, prefix='')
            assert database.connection_info == DB_FILEPATH
            assert database.prefix == ''

    def test_SqliteDatabase_table_name_applies_both_prefixes(self):
        database = classes.SqliteDatabase(DB_FILEPATH, prefix='wp_')
        assert database.table_name('users') == 'wp_users'
        assert database.table_name('users', 'shop_') == 'wp_shop_users'
        assert self.database.table_name('users') == 'users'

    def test_SqliteDatabase_prepare_binds_values_without_substitution(self):
        statement = self.database.prepare(
            'SELECT * FROM things WHERE name = ? AND size > ?',
            "x' OR 1=1 --", 3
        )
        assert isinstance(statement, interfaces.StatementProtocol)
        assert statement.sql == 'SELECT * FROM things WHERE name = ? AND size > ?'
        assert statement.params == ("x' OR 1=1 --", 3)

    def test_SqliteDatabase_prepare_raises_ValueError_for_count_mismatch(self):
        with self.assertRaises(ValueError) as e:
            self.database.prepare('SELECT * FROM things WHERE id = ?')
        assert str(e.exception) == 'sql has 1 placeholders but 0 values were supplied'

        with self.assertRaises(TypeError) as e:
            self.database.prepare(b'SELECT 1')
        assert str(e.exception) == 'sql must be str'

    def test_SqliteDatabase_insert_returns_generated_id(self):
        assert self.database.insert('things', {'name': 'a', 'size': 1}) == 1
        assert self.database.insert('things', {'name': 'b', 'size': 2}) == 2
        assert self.database.insert('things', {}) == 3
        assert self.rows() == [(1, 'a', 1), (2, 'b', 2), (3, None, None)]

    def test_SqliteDatabase_insert_many_uses_one_statement(self):
        with mock.patch.object(self.database, 'execute', wraps=self.database.execute) as execute:
            inserted = self.database.insert_many('things', [
                {'name': 'a', 'size': 1},
                {'size': 2, 'name': 'b'},
                {'name': 'c', 'size': 3},
            ])
        assert inserted == 3
        assert execute.call_count == 1
        statement = execute.call_args[0][0]
        assert statement.sql == 'INSERT INTO things (name, size) VALUES (?, ?), (?, ?), (?, ?)'
        assert statement.params == ('a', 1, 'b', 2, 'c', 3)
        assert [r[1:] for r in self.rows()] == [('a', 1), ('b', 2), ('c', 3)]

    def test_SqliteDatabase_insert_many_empty_list_issues_no_sql(self):
        with mock.patch.object(self.database, 'execute', wraps=self.database.execute) as execute:
            assert self.database.insert_many('things', []) == 0
        assert execute.call_count == 0

    def test_SqliteDatabase_insert_many_raises_ValueError_for_mixed_columns(self):
        with mock.patch.object(self.database, 'execute', wraps=self.database.execute) as execute:
            with self.assertRaises(ValueError) as e:
                self.database.insert_many('things', [
                    {'name': 'a', 'size': 1},
                    {'name': 'b'},
                ])
        assert "['name', 'size']" in str(e.exception)
        assert execute.call_count == 0
        assert self.rows() == []

    def test_SqliteDatabase_query_rows_and_query_scalar(self):
        self.database.insert_many('things', [
            {'name': 'a', 'size': 1},
            {'name': 'b', 'size': 2},
        ])
        rows = self.database.query_rows(
            self.database.prepare('SELECT name, size FROM things ORDER BY size DESC')
        )
        assert rows == [{'name': 'b', 'size': 2}, {'name': 'a', 'size': 1}]

        count = self.database.query_scalar(
            self.database.prepare('SELECT count(*) FROM things WHERE size > ?', 1)
        )
        assert count == 1

        missing = self.database.query_scalar(
            self.database.prepare('SELECT name FROM things WHERE id = ?', 99)
        )
        assert missing is None

    def test_SqliteDatabase_update_and_delete_use_equality_maps(self):
        self.database.insert_many('things', [
            {'name': 'a', 'size': 1},
            {'name': None, 'size': 2},
            {'name': None, 'size': 3},
        ])
        assert self.database.update('things', {'name': 'z'}, {'name': None}) == 2
        assert [r[1] for r in self.rows()] == ['a', 'z', 'z']

        assert self.database.update('things', {'size': 9}, {'name': 'z', 'size': 3}) == 1
        assert self.database.delete('things', {'name': 'z'}) == 2
        assert self.rows() == [(1, 'a', 1)]
        assert self.database.delete('things', {'id': 99}) == 0

    def test_SqliteDatabase_update_and_delete_refuse_empty_where(self):
        with self.assertRaises(ValueError) as e:
            self.database.update('things', {'name': 'z'}, {})
        assert str(e.exception) == 'where cannot be empty'

        with self.assertRaises(ValueError) as e:
            self.database.delete('things', {})
        assert str(e.exception) == 'where cannot be empty'

    def test_SqliteDatabase_propagates_driver_errors(self):
        with self.assertRaises(sqlite3.OperationalError):
            self.database.query_rows(self.database.prepare('SELECT * FROM missing'))


if __name__ == '__main__':
    unittest.main()
