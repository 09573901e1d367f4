from __future__ import annotations
from .collection import Collection, Row
from .errors import tert, vert, tressa, ModelNotFoundError
from .interfaces import (
    DBContextProtocol,
    CursorProtocol,
    DataAccessProtocol,
    StatementProtocol,
)
from .relations import BelongsTo, HasMany, HasOne, Relation
from dataclasses import dataclass, field
from datetime import datetime
from os import environ
from types import TracebackType
from typing import TYPE_CHECKING, Any, Callable, ClassVar, Generator, Iterable, Optional, Type
import logging
import packify
import sqlite3

if TYPE_CHECKING:
    from .registry import EntityDescriptor, Registry


logger = logging.getLogger(__name__)


class _Missing:
    """Sentinel type for arguments that were not supplied."""
    def __repr__(self) -> str:
        return '<missing>'

_MISSING = _Missing()


class SqliteContext:
    """Context manager for sqlite."""
    connection: sqlite3.Connection
    cursor: sqlite3.Cursor
    connection_info: str

    def __init__(self, connection_info: str = '') -> None:
        """Initialize the instance. Raises TypeError for non-str
            connection_info or UsageError for empty connection_info.
        """
        if not connection_info and hasattr(self, 'connection_info'):
            connection_info = self.connection_info
        tert(type(connection_info) in (str, bytes),
            'connection_info must be str or bytes')
        tressa(len(connection_info) > 0, 'cannot use with empty connection_info')
        self.connection = sqlite3.connect(connection_info)
        self.cursor = self.connection.cursor()

    def __enter__(self) -> CursorProtocol:
        """Enter the context block and return the cursor."""
        return self.cursor

    def __exit__(self, __exc_type: Optional[Type[BaseException]],
                __exc_value: Optional[BaseException],
                __traceback: Optional[TracebackType]) -> None:
        """Exit the context block. Commit or rollback as appropriate,
            then close the connection.
        """
        if __exc_type is not None:
            self.connection.rollback()
        else:
            self.connection.commit()

        self.connection.close()


@dataclass(frozen=True)
class Statement:
    """SQL text with placeholders and the values bound to them."""
    sql: str = field()
    params: tuple = field(default=())


class SqliteDatabase:
    """Data access port over a DB-API driver, sqlite3 by default. Every
        statement runs in its own context manager block, so it is
        committed or rolled back on its own.
    """
    connection_info: str = ''
    prefix: str
    context_manager: Type[DBContextProtocol]
    placeholder: str = '?'

    def __init__(self, connection_info: str = '', prefix: str = None,
                 context_manager: Type[DBContextProtocol] = SqliteContext) -> None:
        """Initialize the instance. Empty connection_info falls back to
            the class attribute, then to the CONNECTION_STRING
            environment variable; a None prefix falls back to the
            TABLE_PREFIX environment variable. Raises TypeError for
            invalid parameters.
        """
        if not connection_info:
            connection_info = self.__class__.connection_info or \
                environ.get('CONNECTION_STRING', '')
        if prefix is None:
            prefix = environ.get('TABLE_PREFIX', '')
        tert(type(connection_info) in (str, bytes),
             'connection_info must be str or bytes')
        tert(type(prefix) is str, 'prefix must be str')
        tert(type(context_manager) is type and issubclass(context_manager, DBContextProtocol),
             'context_manager must be class implementing DBContextProtocol')
        self.connection_info = connection_info
        self.prefix = prefix
        self.context_manager = context_manager

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(connection_info='{self.connection_info}', " + \
            f"prefix='{self.prefix}')"

    def table_name(self, name: str, prefix: str = '') -> str:
        """Apply the global prefix and the model prefix to a logical
            table name.
        """
        tert(type(name) is str, 'name must be str')
        tert(type(prefix) is str, 'prefix must be str')
        return f'{self.prefix}{prefix}{name}'

    def prepare(self, sql: str, *values: Any) -> Statement:
        """Bind values to the placeholders of the sql template. The
            values are passed to the driver separately and never
            written into the text. Raises TypeError for non-str sql or
            ValueError if the counts differ.
        """
        tert(type(sql) is str, 'sql must be str')
        expected = sql.count(self.placeholder)
        vert(expected == len(values),
             f'sql has {expected} placeholders but {len(values)} values were supplied')
        return Statement(sql, tuple(values))

    def _run(self, cursor: CursorProtocol, statement: StatementProtocol) -> CursorProtocol:
        """Execute the statement on the cursor."""
        logger.debug('%s [%d params]', statement.sql, len(statement.params))
        cursor.execute(statement.sql, statement.params)
        return cursor

    def execute(self, statement: StatementProtocol) -> int:
        """Execute a statement and return the affected row count."""
        tert(isinstance(statement, StatementProtocol), 'statement must be a Statement')
        with self.context_manager(self.connection_info) as cursor:
            return self._run(cursor, statement).rowcount

    def query_rows(self, statement: StatementProtocol) -> list[dict[str, Any]]:
        """Execute a statement and return all rows as dicts mapping
            column name to value.
        """
        tert(isinstance(statement, StatementProtocol), 'statement must be a Statement')
        with self.context_manager(self.connection_info) as cursor:
            self._run(cursor, statement)
            names = [column[0] for column in (cursor.description or ())]
            return [
                {
                    name: value
                    for name, value in zip(names, row)
                }
                for row in cursor.fetchall()
            ]

    def query_scalar(self, statement: StatementProtocol) -> Any:
        """Execute a statement and return the first value of the first
            row, or None if there are no rows.
        """
        tert(isinstance(statement, StatementProtocol), 'statement must be a Statement')
        with self.context_manager(self.connection_info) as cursor:
            row = self._run(cursor, statement).fetchone()
            return row[0] if row else None

    def insert(self, table: str, row: dict[str, Any]) -> Any:
        """Insert a row and return the generated id (the driver's
            lastrowid), or None if nothing was inserted. Raises
            TypeError for invalid table or row.
        """
        tert(type(table) is str, 'table must be str')
        tert(isinstance(row, dict), 'row must be dict')
        if row:
            placeholders = ', '.join([self.placeholder for _ in row])
            sql = f'INSERT INTO {table} ({", ".join(row)}) VALUES ({placeholders})'
        else:
            sql = f'INSERT INTO {table} DEFAULT VALUES'
        statement = self.prepare(sql, *row.values())

        with self.context_manager(self.connection_info) as cursor:
            self._run(cursor, statement)
            if cursor.rowcount < 1:
                return None
            return cursor.lastrowid

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> int:
        """Insert all rows with a single statement and return the number
            inserted. An empty list returns 0 without touching the
            database. Raises TypeError for invalid table or rows, or
            ValueError if the rows do not share one column set.
        """
        tert(type(table) is str, 'table must be str')
        tert(isinstance(rows, list), 'rows must be list[dict]')
        tert(all([isinstance(r, dict) for r in rows]), 'rows must be list[dict]')
        if not rows:
            return 0

        columns = list(rows[0])
        vert(len(columns) > 0, 'rows must have at least one column')
        for row in rows:
            vert(set(row) == set(columns),
                 f'all rows must have the columns {columns}; got {list(row)}')

        group = f'({", ".join([self.placeholder for _ in columns])})'
        sql = f'INSERT INTO {table} ({", ".join(columns)}) VALUES ' + \
            ', '.join([group for _ in rows])
        values = [row[column] for row in rows for column in columns]
        return self.execute(self.prepare(sql, *values))

    def _equality_clause(self, where: dict[str, Any]) -> tuple[str, list]:
        """Render an equality map as `a = ? AND b IS NULL`."""
        clauses, params = [], []
        for column, value in where.items():
            if value is None:
                clauses.append(f'{column} IS NULL')
            else:
                clauses.append(f'{column} = {self.placeholder}')
                params.append(value)
        return ' AND '.join(clauses), params

    def update(self, table: str, row: dict[str, Any], where: dict[str, Any]) -> int:
        """Update the rows matching the equality map and return the
            number updated. Raises TypeError or ValueError for invalid
            or empty parameters.
        """
        tert(type(table) is str, 'table must be str')
        tert(isinstance(row, dict), 'row must be dict')
        tert(isinstance(where, dict), 'where must be dict')
        vert(len(row) > 0, 'row cannot be empty')
        vert(len(where) > 0, 'where cannot be empty')
        assignments = ', '.join([f'{column} = {self.placeholder}' for column in row])
        clause, params = self._equality_clause(where)
        sql = f'UPDATE {table} SET {assignments} WHERE {clause}'
        return self.execute(self.prepare(sql, *row.values(), *params))

    def delete(self, table: str, where: dict[str, Any]) -> int:
        """Delete the rows matching the equality map and return the
            number deleted. Raises TypeError or ValueError for invalid
            or empty parameters.
        """
        tert(type(table) is str, 'table must be str')
        tert(isinstance(where, dict), 'where must be dict')
        vert(len(where) > 0, 'where cannot be empty')
        clause, params = self._equality_clause(where)
        return self.execute(self.prepare(f'DELETE FROM {table} WHERE {clause}', *params))


@dataclass(frozen=True)
class Predicate:
    """One WHERE condition. NULL checks are their own operators and
        carry no value.
    """
    operators: ClassVar[tuple[str]] = (
        '=', '!=', '<>', '<', '<=', '>', '>=', 'LIKE', 'NOT LIKE',
        'IN', 'NOT IN', 'IS', 'IS NOT', 'IS NULL', 'IS NOT NULL',
    )
    column: str = field()
    operator: str = field()
    value: Any = field(default=None)
    method: str = field(default='AND')

    @classmethod
    def build(cls, column: str, operator: str, value: Any = None,
              method: str = 'AND') -> Predicate:
        """Validate and normalize a condition. A None value turns `=`
            and `IS` into `IS NULL` and `!=`, `<>`, and `IS NOT` into
            `IS NOT NULL`. Raises TypeError or ValueError for malformed
            input.
        """
        tert(type(column) is str, 'column must be str')
        vert(len(column) > 0, 'column cannot be empty')
        tert(type(operator) is str, 'operator must be str')
        operator = ' '.join(operator.upper().split())
        vert(operator in cls.operators, f'unsupported operator {operator}')
        vert(method in ('AND', 'OR'), 'method must be AND or OR')

        if operator in ('IS NULL', 'IS NOT NULL'):
            return cls(column, operator, None, method)

        if value is None:
            if operator in ('=', 'IS'):
                return cls(column, 'IS NULL', None, method)
            vert(operator in ('!=', '<>', 'IS NOT'),
                 f'operator {operator} cannot be used with NULL')
            return cls(column, 'IS NOT NULL', None, method)

        if operator in ('IN', 'NOT IN'):
            tert(hasattr(value, '__iter__') and not isinstance(value, (str, bytes)),
                 f'{operator} value must be an iterable of values')
            value = tuple(value)

        return cls(column, operator, value, method)

    def render(self, table: str, placeholder: str = '?') -> tuple[str, list]:
        """Render the condition against the table. Return the sql
            fragment and the values for its placeholders.
        """
        column = self.column if '.' in self.column else f'{table}.{self.column}'
        if self.operator in ('IS NULL', 'IS NOT NULL'):
            return f'{column} {self.operator}', []
        if self.operator in ('IN', 'NOT IN'):
            placeholders = ', '.join([placeholder for _ in self.value])
            return f'{column} {self.operator} ({placeholders})', list(self.value)
        return f'{column} {self.operator} {placeholder}', [self.value]


@dataclass(frozen=True)
class JoinSpec:
    """Class for representing joins to be executed by a query builder.
        A deleted_at_column keeps trashed rows of the joined table from
        matching.
    """
    table: str = field()
    local_key: str = field()
    foreign_key: str = field()
    deleted_at_column: Optional[str] = field(default=None)

    def render(self, table: str) -> str:
        sql = f'INNER JOIN {self.table} ON {table}.{self.local_key} = ' + \
            f'{self.table}.{self.foreign_key}'
        if self.deleted_at_column:
            sql += f' AND {self.table}.{self.deleted_at_column} IS NULL'
        return sql


@dataclass(frozen=True)
class EagerLoad:
    """A relation requested for eager loading."""
    name: str = field()
    relation: Relation = field()

    @property
    def related(self) -> Type[SqlModel]:
        return self.relation.related

    @property
    def owner_key(self) -> str:
        return self.relation.owner_key

    @property
    def related_key(self) -> str:
        return self.relation.related_key


class SqlQueryBuilder:
    """Main query builder class. Accumulates clauses, compiles them into
        a single parameterized statement, and runs it through the
        database of the registry the model is bound to. Instances are
        mutable and meant for one query chain.
    """
    model: Type[SqlModel]
    registry: Registry
    descriptor: EntityDescriptor
    database: DataAccessProtocol
    columns: list[str]
    predicates: list[Predicate]
    joins: list[JoinSpec]
    eager_loads: list[EagerLoad]
    grouping: list[str]
    ordering: list[tuple[str, str]]
    row_limit: Optional[int]
    row_offset: Optional[int]
    include_trashed: bool
    malformed: int

    def __init__(self, model: Type[SqlModel], registry: Registry = None) -> None:
        """Initialize the instance. Raises TypeError for invalid model
            or UsageError for an unregistered model.
        """
        tert(type(model) is type and issubclass(model, SqlModel),
             'model must be subclass of SqlModel')
        registry = registry or model.registry
        tressa(registry is not None, f'{model.__name__} is not registered')
        self.model = model
        self.registry = registry
        self.descriptor = registry.descriptor(model)
        self.database = registry.database
        self.columns = ['*']
        self.predicates = []
        self.joins = []
        self.eager_loads = []
        self.grouping = []
        self.ordering = []
        self.row_limit = None
        self.row_offset = None
        self.include_trashed = False
        self.malformed = 0

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model.__name__}, " + \
            f"sql='{self.to_sql().sql}')"

    @property
    def table(self) -> str:
        """The table name for the base query."""
        return self.descriptor.table

    def reset(self) -> SqlQueryBuilder:
        """Returns a fresh instance using the configured model."""
        return self.__class__(self.model, self.registry)

    def select(self, columns: str|list[str]|tuple[str]) -> SqlQueryBuilder:
        """Sets the columns to select: one column, a comma separated
            str, or a list. Raises TypeError or ValueError for invalid
            columns.
        """
        if type(columns) is str:
            columns = [c.strip() for c in columns.split(',') if c.strip()]
        tert(type(columns) in (list, tuple), 'select columns must be list[str]')
        tert(all([type(c) is str for c in columns]), 'select columns must be list[str]')
        vert(len(columns) > 0, 'select columns cannot be empty')
        self.columns = [*columns]
        return self

    def _where(self, method: str, column: str|dict, operator_or_value: Any,
               value: Any) -> SqlQueryBuilder:
        """Append a predicate or, for a dict, one equality predicate per
            item. Malformed input is ignored and counted in `malformed`.
        """
        if isinstance(column, dict):
            for key, item in column.items():
                self._where(method, key, item, _MISSING)
            return self

        if operator_or_value is _MISSING:
            logger.debug('ignoring where on %r without a value', column)
            self.malformed += 1
            return self

        operator = operator_or_value
        if value is _MISSING:
            operator, value = '=', operator_or_value

        try:
            predicate = Predicate.build(column, operator, value, method)
        except (TypeError, ValueError) as e:
            logger.debug('ignoring malformed where on %r: %s', column, e)
            self.malformed += 1
            return self

        self.predicates.append(predicate)
        return self

    def where(self, column: str|dict, operator_or_value: Any = _MISSING,
              value: Any = _MISSING) -> SqlQueryBuilder:
        """Add a predicate joined with AND. Called as `where(column,
            value)` the operator is `=`; `where(column, operator, value)`
            uses the given operator; `where({column: value, ...})` adds
            an equality predicate per item. A None value makes a NULL
            check. Malformed input is a no-op.
        """
        return self._where('AND', column, operator_or_value, value)

    def or_where(self, column: str|dict, operator_or_value: Any = _MISSING,
                 value: Any = _MISSING) -> SqlQueryBuilder:
        """Same as `where` but joined with OR."""
        return self._where('OR', column, operator_or_value, value)

    def where_in(self, column: str, values: Iterable) -> SqlQueryBuilder:
        """Add a `column IN (...)` predicate."""
        return self.where(column, 'IN', values)

    def where_not_in(self, column: str, values: Iterable) -> SqlQueryBuilder:
        """Add a `column NOT IN (...)` predicate."""
        return self.where(column, 'NOT IN', values)

    def where_null(self, column: str) -> SqlQueryBuilder:
        """Add a `column IS NULL` predicate."""
        return self.where(column, 'IS NULL', None)

    def where_not_null(self, column: str) -> SqlQueryBuilder:
        """Add a `column IS NOT NULL` predicate."""
        return self.where(column, 'IS NOT NULL', None)

    def _relation_where(self, method: str, relation: str, column: str,
                        operator_or_value: Any, value: Any) -> SqlQueryBuilder:
        """Join the related table once and add the predicate against
            it. Raises RelationNotFoundError for an unknown relation.
        """
        resolved = self.registry.relation(self.model, relation)
        related = self.registry.descriptor(resolved.related)
        related_table = related.table
        if related_table not in [j.table for j in self.joins]:
            self.joins.append(JoinSpec(
                related_table, resolved.owner_key, resolved.related_key,
                related.deleted_at_column if related.soft_deletes else None,
            ))
        if isinstance(column, dict):
            column = {
                f'{related_table}.{key}' if type(key) is str else key: item
                for key, item in column.items()
            }
        elif type(column) is str:
            column = f'{related_table}.{column}'
        return self._where(method, column, operator_or_value, value)

    def where_relation(self, relation: str, column: str,
                       operator_or_value: Any = _MISSING,
                       value: Any = _MISSING) -> SqlQueryBuilder:
        """Filter on a column of a related model, joined with AND.
            Raises RelationNotFoundError for an unknown relation.
        """
        return self._relation_where('AND', relation, column, operator_or_value, value)

    def or_where_relation(self, relation: str, column: str,
                          operator_or_value: Any = _MISSING,
                          value: Any = _MISSING) -> SqlQueryBuilder:
        """Filter on a column of a related model, joined with OR.
            Raises RelationNotFoundError for an unknown relation.
        """
        return self._relation_where('OR', relation, column, operator_or_value, value)

    def _add(self, column: str, operator: str, value: Any = None) -> SqlQueryBuilder:
        """Append a validated predicate. Raises TypeError or ValueError."""
        self.predicates.append(Predicate.build(column, operator, value))
        return self

    def is_null(self, column: str) -> SqlQueryBuilder:
        """Save the 'column is null' clause, then return self. Raises
            TypeError for invalid column.
        """
        return self._add(column, 'IS NULL')

    def not_null(self, column: str) -> SqlQueryBuilder:
        """Save the 'column is not null' clause, then return self.
            Raises TypeError for invalid column.
        """
        return self._add(column, 'IS NOT NULL')

    def equal(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column = data' clause and param, then return self.
            Raises TypeError for invalid column.
        """
        return self._add(column, '=', data)

    def not_equal(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column != data' clause and param, then return self.
            Raises TypeError for invalid column.
        """
        return self._add(column, '!=', data)

    def less(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column < data' clause and param, then return self.
            Raises TypeError for invalid column or ValueError for None.
        """
        return self._add(column, '<', data)

    def less_or_equal(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column <= data' clause and param, then return self.
            Raises TypeError for invalid column or ValueError for None.
        """
        return self._add(column, '<=', data)

    def greater(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column > data' clause and param, then return self.
            Raises TypeError for invalid column or ValueError for None.
        """
        return self._add(column, '>', data)

    def greater_or_equal(self, column: str, data: Any) -> SqlQueryBuilder:
        """Save the 'column >= data' clause and param, then return self.
            Raises TypeError for invalid column or ValueError for None.
        """
        return self._add(column, '>=', data)

    def like(self, column: str, pattern: str, data: str) -> SqlQueryBuilder:
        """Save the 'column like {pattern.replace(?, data)}' clause and
            param, then return self. Raises TypeError or ValueError for
            invalid column, pattern, or data.
        """
        tert(type(pattern) is str, 'pattern must be str')
        tert(type(data) is str, 'data must be str')
        vert(len(pattern), 'pattern cannot be empty')
        vert(len(data), 'data cannot be empty')
        return self._add(column, 'LIKE', pattern.replace('?', data))

    def starts_with(self, column: str, data: str) -> SqlQueryBuilder:
        """Save the 'column like data%' clause and param, then return
            self. Raises TypeError or ValueError for invalid column or
            data.
        """
        return self.like(column, '?%', data)

    def contains(self, column: str, data: str) -> SqlQueryBuilder:
        """Save the 'column like %data%' clause and param, then return
            self. Raises TypeError or ValueError for invalid column or
            data.
        """
        return self.like(column, '%?%', data)

    def ends_with(self, column: str, data: str) -> SqlQueryBuilder:
        """Save the 'column like %data' clause and param, then return
            self. Raises TypeError or ValueError for invalid column or
            data.
        """
        return self.like(column, '%?', data)

    def is_in(self, column: str, data: list|tuple) -> SqlQueryBuilder:
        """Save the 'column in data' clause and param, then return self.
            Raises TypeError or ValueError for invalid column or data.
        """
        tert(type(data) in (tuple, list), 'data must be tuple or list')
        vert(len(data), 'data cannot be empty')
        return self._add(column, 'IN', data)

    def not_in(self, column: str, data: list|tuple) -> SqlQueryBuilder:
        """Save the 'column not in data' clause and param, then return
            self. Raises TypeError or ValueError for invalid column or
            data.
        """
        tert(type(data) in (tuple, list), 'data must be tuple or list')
        vert(len(data), 'data cannot be empty')
        return self._add(column, 'NOT IN', data)

    def with_(self, *relations: str) -> SqlQueryBuilder:
        """Register relations for eager loading when `get` runs. Raises
            RelationNotFoundError for an unknown relation.
        """
        for name in relations:
            resolved = self.registry.relation(self.model, name)
            if name not in [e.name for e in self.eager_loads]:
                self.eager_loads.append(EagerLoad(name, resolved))
        return self

    def with_trashed(self) -> SqlQueryBuilder:
        """Include soft-deleted rows."""
        self.include_trashed = True
        return self

    def group_by(self, *columns: str) -> SqlQueryBuilder:
        """Adds GROUP BY columns. Raises TypeError for invalid columns."""
        tert(all([type(c) is str for c in columns]), 'group by columns must be str')
        self.grouping.extend(columns)
        return self

    def order_by(self, column: str, direction: str = 'asc') -> SqlQueryBuilder:
        """Adds an ORDER BY column. Raises TypeError or ValueError for
            invalid column or direction.
        """
        tert(type(column) is str, 'column must be str')
        tert(type(direction) is str, 'direction must be str')
        vert(direction.lower() in ('asc', 'desc'), 'direction must be asc or desc')
        self.ordering.append((column, direction.lower()))
        return self

    def limit(self, number: int) -> SqlQueryBuilder:
        """Sets the maximum number of rows. Raises TypeError or
            ValueError for invalid number.
        """
        tert(type(number) is int, 'limit must be int >= 0')
        vert(number >= 0, 'limit must be int >= 0')
        self.row_limit = number
        return self

    def offset(self, number: int) -> SqlQueryBuilder:
        """Sets the number of rows to skip. Only applied together with
            a limit. Raises TypeError or ValueError for invalid number.
        """
        tert(type(number) is int, 'offset must be int >= 0')
        vert(number >= 0, 'offset must be int >= 0')
        self.row_offset = number
        return self

    def skip(self, number: int) -> SqlQueryBuilder:
        """Alias of `offset`."""
        return self.offset(number)

    def _soft_delete_scope_applies(self) -> bool:
        """True unless the model keeps deleted rows out of reads or the
            caller filtered the deleted-at column explicitly.
        """
        if not self.descriptor.soft_deletes or self.include_trashed:
            return False
        column = self.descriptor.deleted_at_column
        targets = (column, f'{self.table}.{column}')
        return not any([p.column in targets for p in self.predicates])

    def _compile_where(self) -> tuple[str, list]:
        """Render the predicates in order, dropping the first join
            keyword, and collect their values in the same order.
        """
        clauses, params = [], []
        for predicate in self.predicates:
            sql, values = predicate.render(self.table, self.database.placeholder)
            clauses.append(f'{predicate.method} {sql}' if clauses else sql)
            params.extend(values)
        where = ' '.join(clauses)

        if self._soft_delete_scope_applies():
            scope, _ = Predicate(self.descriptor.deleted_at_column, 'IS NULL').render(self.table)
            where = f'{scope} AND ({where})' if where else scope

        return where, params

    def to_sql(self, count: bool = False) -> Statement:
        """Compile the SELECT (or the count variant) into a Statement
            without running it.
        """
        if count:
            sql = f'SELECT count(*) FROM {self.table}'
        else:
            columns = self.columns
            if columns == ['*'] and self.joins:
                columns = [f'{self.table}.*']
            sql = f'SELECT {", ".join(columns)} FROM {self.table}'

        for join in self.joins:
            sql += ' ' + join.render(self.table)

        where, params = self._compile_where()
        if where:
            sql += f' WHERE {where}'

        if not count:
            if self.grouping:
                sql += f' GROUP BY {", ".join(self.grouping)}'

            if self.ordering:
                sql += ' ORDER BY ' + ', '.join([
                    f'{column} {direction.upper()}'
                    for column, direction in self.ordering
                ])

            if self.row_limit is not None:
                sql += f' LIMIT {self.row_limit}'
            elif self.row_offset:
                # sqlite only accepts OFFSET after a LIMIT; -1 is unbounded
                sql += ' LIMIT -1'

            if self.row_offset:
                sql += f' OFFSET {self.row_offset}'

        return self.database.prepare(sql, *params)

    def count(self) -> int:
        """Returns the number of records matching the query."""
        return int(self.database.query_scalar(self.to_sql(count=True)) or 0)

    def exists(self) -> bool:
        """Returns True if any record matches the query."""
        return self.count() > 0

    def get(self) -> Collection:
        """Run the query and return a Collection of models with their
            eager-loaded relations attached. A grouped query returns a
            Collection of Rows instead.
        """
        rows = self.database.query_rows(self.to_sql())

        if self.grouping:
            return Collection([Row(data=row) for row in rows])

        loaded = self._load_relations(rows)
        models = []
        for row in rows:
            relations = {
                eager.name: Collection(loaded[eager.name].get(row.get(eager.owner_key), ()))
                for eager in self.eager_loads
            }
            models.append(self.model.hydrate(row, relations))
        return Collection(models)

    def _load_relations(self, rows: list[dict]) -> dict[str, dict[Any, Collection]]:
        """Resolve every eager load with one query each. Return, per
            relation name, a map of key value to the Collection of
            related models; every key found on the rows is present.
        """
        loaded = {}
        for eager in self.eager_loads:
            keys = list(dict.fromkeys([
                row.get(eager.owner_key)
                for row in rows
                if row.get(eager.owner_key) is not None
            ]))
            grouped = {key: Collection() for key in keys}
            loaded[eager.name] = grouped

            if not keys:
                continue

            logger.debug('eager loading %s.%s for %d keys',
                         self.model.__name__, eager.name, len(keys))
            related = eager.related.query().where_in(eager.related_key, keys).get()
            for model in related:
                key = model.data.get(eager.related_key)
                if key in grouped:
                    grouped[key].push(model)

        return loaded

    def first(self) -> Optional[SqlModel|Row]:
        """Run the query and return the first result or None."""
        original_limit = self.row_limit
        if original_limit is None:
            self.row_limit = 1
        try:
            return self.get().first()
        finally:
            self.row_limit = original_limit

    def first_or_fail(self) -> SqlModel|Row:
        """Run the query and return the first result. Raises
            ModelNotFoundError if there is none.
        """
        result = self.first()
        if result is None:
            raise ModelNotFoundError(f'no {self.model.__name__} record found')
        return result

    def find(self, id: Any) -> Optional[SqlModel]:
        """Find a record by its id and return it."""
        return self.where(self.descriptor.id_column, id).first()

    def take(self, number: int) -> Collection:
        """Takes the specified number of rows. Raises TypeError or
            ValueError for invalid number.
        """
        tert(type(number) is int, 'number must be positive int')
        vert(number > 0, 'number must be positive int')
        self.row_limit = number
        return self.get()

    def chunk(self, number: int) -> Generator[Collection, None, None]:
        """Chunk all matching rows the specified number of rows at a
            time. Raises TypeError or ValueError for invalid number.
        """
        tert(type(number) is int, 'number must be int > 0')
        vert(number > 0, 'number must be int > 0')
        return self._chunk(number)

    def _chunk(self, number: int) -> Generator[Collection, None, None]:
        """Create the generator for chunking."""
        original_limit, original_offset = self.row_limit, self.row_offset
        self.row_offset = self.row_offset or 0
        try:
            result = self.take(number)
            while len(result) > 0:
                yield result
                if len(result) < number:
                    break
                self.row_offset += number
                result = self.take(number)
        finally:
            self.row_limit, self.row_offset = original_limit, original_offset

    def update(self, values: dict) -> int:
        """Update the matching records and return the number updated.
            Keys that are not columns of the model are ignored. Raises
            TypeError for invalid values or UsageError for a joined
            query or one where a malformed `where` was ignored.
        """
        tert(isinstance(values, dict), 'values must be dict')
        tressa(len(self.joins) == 0, 'cannot update a query with joins')
        tressa(self.malformed == 0, 'cannot update after a malformed where was ignored')

        assignments, params = [], []
        for column, value in values.items():
            if column in self.descriptor.columns:
                assignments.append(f'{column} = {self.database.placeholder}')
                params.append(value)

        if len(assignments) == 0:
            return 0

        sql = f'UPDATE {self.table} SET {", ".join(assignments)}'
        where, where_params = self._compile_where()
        if where:
            sql += f' WHERE {where}'

        return self.database.execute(self.database.prepare(sql, *params, *where_params))

    def delete(self) -> int:
        """Delete the matching records and return the number deleted.
            Soft-deleting models get their deleted-at column set
            instead. Raises UsageError for a joined query or one where a
            malformed `where` was ignored.
        """
        tressa(len(self.joins) == 0, 'cannot delete from a query with joins')
        tressa(self.malformed == 0, 'cannot delete after a malformed where was ignored')
        if self.descriptor.soft_deletes:
            return self.update({
                self.descriptor.deleted_at_column: self.model.fresh_timestamp()
            })

        sql = f'DELETE FROM {self.table}'
        where, params = self._compile_where()
        if where:
            sql += f' WHERE {where}'

        return self.database.execute(self.database.prepare(sql, *params))


class SqlModel:
    """General model for mapping a SQL row to an in-memory object.
        Subclasses must be registered with a Registry before use.
    """
    table: Optional[str] = None
    id_column: str = 'id'
    columns: tuple = ('id',)
    prefix: str = ''
    soft_deletes: bool = False
    deleted_at_column: str = 'deleted_at'
    query_builder_class: Type[SqlQueryBuilder] = SqlQueryBuilder
    registry: Optional[Registry] = None
    data: dict
    relations: dict[str, Collection]
    persisted: bool
    _event_hooks: dict[str, list[Callable]] = {}

    def __init__(self, data: dict = {}) -> None:
        """Initialize the instance with the values of declared columns.
            Raises TypeError for non-dict data.
        """
        tert(isinstance(data, dict), 'data must be dict')
        self.data = {}
        self.relations = {}
        self.persisted = False

        for key in data:
            if type(key) is str and key in self.columns:
                self.data[key] = data[key]

    @classmethod
    def hydrate(cls, row: dict, relations: dict[str, Collection] = None) -> SqlModel:
        """Build an instance from a stored row, marked as persisted."""
        model = cls(row)
        model.relations.update(relations or {})
        model.persisted = True
        return model

    @classmethod
    def create_column_properties(cls) -> None:
        """Set a property for each column whose name is not already
            taken by an attribute of the class.
        """
        names = {*dir(cls), 'data', 'relations', 'persisted'}
        for column in cls.columns:
            if column not in names:
                setattr(cls, column, cls.create_property(column))

    @staticmethod
    def create_property(name) -> property:
        """Create a dynamic property for the column with the given name."""
        @property
        def prop(self):
            return self.data.get(name)
        @prop.setter
        def prop(self, value):
            self.data[name] = value
        return prop

    @classmethod
    def add_hook(cls, event: str, hook: Callable):
        """Add the hook for the event."""
        if cls is not SqlModel and cls._event_hooks is SqlModel._event_hooks:
            cls._event_hooks = {} # give each class its own event hooks dict
        if event not in cls._event_hooks:
            cls._event_hooks[event] = []
        if hook not in cls._event_hooks[event]:
            cls._event_hooks[event].append(hook)

    @classmethod
    def remove_hook(cls, event: str, hook: Callable):
        """Remove the hook for the event."""
        if event not in cls._event_hooks:
            return
        if hook in cls._event_hooks[event]:
            cls._event_hooks[event].remove(hook)

    @classmethod
    def clear_hooks(cls, event: str = None):
        """Remove all hooks for an event. If no event is specified,
            clear all hooks for all events.
        """
        if cls is not SqlModel and cls._event_hooks is SqlModel._event_hooks:
            cls._event_hooks = {} # give each class its own event hooks dict
        if event is None:
            return cls._event_hooks.clear()
        if event in cls._event_hooks:
            del cls._event_hooks[event]

    @classmethod
    def invoke_hooks(cls, event: str, *args, **kwargs):
        """Invoke the hooks for the event, passing cls, *args, and
            **kwargs.
        """
        for hook in cls._event_hooks.get(event, []):
            hook(cls, *args, **kwargs)

    @staticmethod
    def encode_value(val: Any) -> str:
        """Encode a value for hashing. Uses the pack function from
            packify.
        """
        return packify.pack(val).hex()

    def __hash__(self) -> int:
        """Allow inclusion in sets. Raises TypeError for unencodable
            type within self.data (calls packify.pack).
        """
        data = self.encode_value(self.data)
        return hash(bytes(data, 'utf-8'))

    def __eq__(self, other) -> bool:
        """Allow comparisons. Raises TypeError on unencodable value in
            self.data or other.data (calls cls.__hash__ which calls
            packify.pack).
        """
        if type(other) != type(self):
            return False

        return hash(self) == hash(other)

    def __repr__(self) -> str:
        """Pretty str representation."""
        return f"{self.__class__.__name__}(data={self.data}, " + \
            f"relations={list(self.relations)}, persisted={self.persisted})"

    @classmethod
    def descriptor(cls) -> EntityDescriptor:
        """The descriptor computed when the model was registered. Raises
            UsageError if the model is not registered.
        """
        tressa(cls.registry is not None, f'{cls.__name__} is not registered')
        return cls.registry.descriptor(cls)

    @classmethod
    def generate_id(cls) -> Any:
        """Return an id for a new record, or None to let the database
            assign it. Override to use client-side ids.
        """
        return None

    @staticmethod
    def fresh_timestamp() -> str:
        """The value written to the deleted-at column."""
        return datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    @classmethod
    def query(cls, conditions: dict = None) -> SqlQueryBuilder:
        """Returns a query builder with any equality conditions
            provided. Raises UsageError if the model is not registered.
        """
        cls.descriptor()
        sqb = cls.registry.query(cls)
        if conditions is not None:
            sqb.where(conditions)
        return sqb

    @classmethod
    def where(cls, column: str|dict, operator_or_value: Any = _MISSING,
              value: Any = _MISSING) -> SqlQueryBuilder:
        """Start a query with a predicate. See SqlQueryBuilder.where."""
        return cls.query().where(column, operator_or_value, value)

    @classmethod
    def where_in(cls, column: str, values: Iterable) -> SqlQueryBuilder:
        """Start a query with an IN predicate."""
        return cls.query().where_in(column, values)

    @classmethod
    def with_(cls, *relations: str) -> SqlQueryBuilder:
        """Start a query that eager loads the named relations."""
        return cls.query().with_(*relations)

    @classmethod
    def select(cls, columns: str|list[str]|tuple[str]) -> SqlQueryBuilder:
        """Start a query selecting the given columns."""
        return cls.query().select(columns)

    @classmethod
    def order_by(cls, column: str, direction: str = 'asc') -> SqlQueryBuilder:
        """Start an ordered query."""
        return cls.query().order_by(column, direction)

    @classmethod
    def all(cls) -> Collection:
        """Return every record."""
        return cls.query().get()

    @classmethod
    def find(cls, id: Any) -> Optional[SqlModel]:
        """Find a record by its id and return it. Return None if it does
            not exist.
        """
        return cls.query().find(id)

    def _row_for_insert(self) -> dict:
        """The column values to insert, with a generated id if the model
            supplies one.
        """
        row = {
            key: value
            for key, value in self.data.items()
            if key in self.columns
        }
        if row.get(self.id_column) is None:
            row.pop(self.id_column, None)
            generated = self.generate_id()
            if generated is not None:
                row[self.id_column] = generated
        return row

    def _insert(self) -> Optional[SqlModel]:
        """Insert self as a new row. Return self, or None if the
            database reported failure.
        """
        descriptor = self.descriptor()
        row = self._row_for_insert()
        inserted_id = self.registry.database.insert(descriptor.table, row)
        if inserted_id is None:
            return None
        self.data[self.id_column] = row.get(self.id_column, inserted_id)
        self.persisted = True
        return self

    @classmethod
    def create(cls, data: dict, /, *, suppress_events: bool = False) -> Optional[SqlModel]:
        """Insert a new record to the datastore. Return the instance
            with its id set, or None on failure. Raises TypeError if
            data is not a dict.
        """
        tert(isinstance(data, dict), 'data must be dict')
        if not suppress_events:
            cls.invoke_hooks('before_create', data)

        model = cls(data)._insert()

        if not suppress_events:
            cls.invoke_hooks('after_create', data, model)
        return model

    @classmethod
    def create_many(cls, items: list[dict], /, *, suppress_events: bool = False) -> int:
        """Insert a batch of records with one statement and return the
            number inserted. An empty list inserts nothing and returns
            0. Raises TypeError if items is not list[dict] or ValueError
            if the items do not share the same columns.
        """
        tert(isinstance(items, list), 'items must be type list[dict]')
        tert(all([isinstance(item, dict) for item in items]),
             'items must be type list[dict]')
        if len(items) == 0:
            return 0

        if not suppress_events:
            cls.invoke_hooks('before_create_many', items)

        rows = [cls(item)._row_for_insert() for item in items]
        val = cls.registry.database.insert_many(cls.descriptor().table, rows)

        if not suppress_events:
            cls.invoke_hooks('after_create_many', items, val)
        return val

    def update(self, updates: dict, /, *, suppress_events: bool = False) -> Optional[SqlModel]:
        """Apply the updates and persist all column values by primary
            key. Return self in monad pattern, or None if no row was
            updated. Raises TypeError or ValueError for invalid updates
            or a missing id.
        """
        tert(type(updates) is dict, 'updates must be dict')
        vert(self.data.get(self.id_column) is not None,
             f'instance must have {self.id_column} to update')
        if not suppress_events:
            self.invoke_hooks('before_update', self, updates)

        for key in updates:
            if key in self.columns:
                self.data[key] = updates[key]

        changes = {
            key: value
            for key, value in self.data.items()
            if key in self.columns and key != self.id_column
        }

        result = self
        if changes:
            updated = self.registry.database.update(
                self.descriptor().table,
                changes,
                {self.id_column: self.data[self.id_column]}
            )
            result = self if updated else None

        if not suppress_events:
            self.invoke_hooks('after_update', self, updates, result)
        return result

    def save(self, /, *, suppress_events: bool = False) -> Optional[SqlModel]:
        """Persist to the datastore: insert a new instance, update a
            persisted one. Return self in monad pattern, or None on
            failure.
        """
        if not suppress_events:
            self.invoke_hooks('before_save', self)

        if self.persisted and self.data.get(self.id_column) is not None:
            result = self.update({}, suppress_events=True)
        else:
            result = self._insert()

        if not suppress_events:
            self.invoke_hooks('after_save', self, result)
        return result

    def delete(self, /, *, suppress_events: bool = False) -> int:
        """Delete the record and return the number of rows affected.
            Soft-deleting models get their deleted-at column set
            instead. Raises ValueError if the instance has no id.
        """
        vert(self.data.get(self.id_column) is not None,
             f'instance must have {self.id_column} to delete')
        if not suppress_events:
            self.invoke_hooks('before_delete', self)

        descriptor = self.descriptor()
        where = {self.id_column: self.data[self.id_column]}
        if descriptor.soft_deletes:
            timestamp = self.fresh_timestamp()
            affected = self.registry.database.update(
                descriptor.table, {descriptor.deleted_at_column: timestamp}, where
            )
            if affected:
                self.data[descriptor.deleted_at_column] = timestamp
        else:
            affected = self.registry.database.delete(descriptor.table, where)
            if affected:
                self.persisted = False

        if not suppress_events:
            self.invoke_hooks('after_delete', self, affected)
        return affected

    def trashed(self) -> bool:
        """Whether a soft-deleting model is marked deleted."""
        return self.soft_deletes and self.data.get(self.deleted_at_column) is not None

    def restore(self) -> Optional[SqlModel]:
        """Clear the deleted-at column of a soft-deleting model. Return
            self, or None on failure. Raises UsageError if the model
            does not use soft deletes.
        """
        tressa(self.soft_deletes, f'{self.__class__.__name__} does not use soft deletes')
        return self.update({self.deleted_at_column: None})

    def reload(self) -> SqlModel:
        """Reload values from datastore and forget loaded relations.
            Return self in monad pattern. Raises UsageError if id is not
            set in self.data.
        """
        tressa(self.data.get(self.id_column) is not None,
               'id_column must be set in self.data to reload from db')
        reloaded = self.query().with_trashed().find(self.data[self.id_column])
        if reloaded:
            self.data = reloaded.data
            self.relations = {}
        return self

    @classmethod
    def has_one(cls, related: Type[SqlModel], foreign_key: str = None,
                local_key: str = None) -> HasOne:
        """Build a HasOne descriptor. The foreign key defaults to this
            model's name in snake_case plus the id column, e.g. user_id.
        """
        descriptor = cls.descriptor()
        return HasOne(
            related,
            foreign_key or descriptor.foreign_id_column,
            local_key or descriptor.id_column,
        )

    @classmethod
    def has_many(cls, related: Type[SqlModel], foreign_key: str = None,
                 local_key: str = None) -> HasMany:
        """Build a HasMany descriptor. The foreign key defaults to this
            model's name in snake_case plus the id column, e.g. user_id.
        """
        descriptor = cls.descriptor()
        return HasMany(
            related,
            foreign_key or descriptor.foreign_id_column,
            local_key or descriptor.id_column,
        )

    @classmethod
    def belongs_to(cls, related: Type[SqlModel], foreign_key: str = None,
                   local_key: str = None) -> BelongsTo:
        """Build a BelongsTo descriptor. The foreign key defaults to the
            related model's name in snake_case plus its id column.
        """
        descriptor = related.descriptor()
        return BelongsTo(
            related,
            foreign_key or descriptor.foreign_id_column,
            local_key or descriptor.id_column,
        )

    def relation(self, name: str) -> Relation:
        """Return the named relation bound to this instance. Raises
            RelationNotFoundError for an unknown name.
        """
        self.descriptor()
        return self.registry.relation(self.__class__, name).bind(self)

    def load(self, name: str) -> Collection:
        """Return the named relation's models, querying them once if
            they were not eager loaded.
        """
        if name not in self.relations:
            self.relations[name] = self.relation(name).get_results()
        return self.relations[name]

    def attribute(self, name: str) -> Any:
        """Return the value of a declared column or the models of a
            declared relation; None for anything else.
        """
        if name in self.columns:
            return self.data.get(name)
        if name in self.registry.relations(self.__class__):
            return self.load(name)
        return None

    def to_dict(self) -> dict:
        """The column values merged with the loaded relation results."""
        result = dict(self.data)
        for name, models in self.relations.items():
            result[name] = [
                m.to_dict() if isinstance(m, SqlModel) else m
                for m in models
            ]
        return result
