"""
    The interfaces used by the package. `DataAccessProtocol` is the
    boundary to the database: implement it (or `CursorProtocol` and
    `DBContextProtocol` for a DB-API driver wrapped by `SqliteDatabase`)
    to bind the library to a new SQL driver. `ModelProtocol`,
    `QueryBuilderProtocol`, and `RelationProtocol` describe the ORM
    itself.
"""


from __future__ import annotations
from types import TracebackType
from typing import (
    Any,
    Callable,
    Generator,
    Iterable,
    Optional,
    Protocol,
    Type,
    runtime_checkable,
)


@runtime_checkable
class CursorProtocol(Protocol):
    """Interface showing how a DB cursor should function."""
    def execute(self, sql: str, parameters: Iterable[Any] = ()) -> CursorProtocol:
        """Execute a single query with the given parameters."""
        ...

    def fetchone(self) -> Any:
        """Get one record returned by the previous query."""
        ...

    def fetchall(self) -> Any:
        """Get all records returned by the previous query."""
        ...


@runtime_checkable
class DBContextProtocol(Protocol):
    """Interface showing how a context manager for connecting
        to a database should behave.
    """
    def __init__(self, connection_info: str = '') -> None:
        """Using the connection_info parameter is optional but should be
            supported. Fall back to a class attribute when it is empty.
        """
        ...

    def __enter__(self) -> CursorProtocol:
        """Enter the `with` block. Should return a cursor useful for
            making db calls.
        """
        ...

    def __exit__(self, exc_type: Optional[Type[BaseException]],
                exc_value: Optional[BaseException],
                traceback: Optional[TracebackType]) -> None:
        """Exit the `with` block. Should commit or rollback as
            appropriate, then close the connection.
        """
        ...


@runtime_checkable
class StatementProtocol(Protocol):
    """Interface for a SQL template bound together with its values."""
    @property
    def sql(self) -> str:
        """The SQL text with placeholders."""
        ...

    @property
    def params(self) -> tuple:
        """The values for the placeholders, in order."""
        ...


@runtime_checkable
class DataAccessProtocol(Protocol):
    """Interface showing what the ORM requires from its database."""
    @property
    def prefix(self) -> str:
        """The global table name prefix."""
        ...

    @property
    def placeholder(self) -> str:
        """The token the driver binds values to."""
        ...

    def prepare(self, sql: str, *values: Any) -> StatementProtocol:
        """Bind values to a placeholder template. Must never substitute
            the values into the text.
        """
        ...

    def execute(self, statement: StatementProtocol) -> int:
        """Execute a statement and return the affected row count."""
        ...

    def query_rows(self, statement: StatementProtocol) -> list[dict[str, Any]]:
        """Execute a statement and return all rows as dicts."""
        ...

    def query_scalar(self, statement: StatementProtocol) -> Any:
        """Execute a statement and return the first column of the
            first row, or None.
        """
        ...

    def insert(self, table: str, row: dict[str, Any]) -> Any:
        """Insert a row and return the generated id, or None on
            failure.
        """
        ...

    def insert_many(self, table: str, rows: list[dict[str, Any]]) -> int:
        """Insert rows with one statement and return the number
            inserted.
        """
        ...

    def update(self, table: str, row: dict[str, Any],
               where: dict[str, Any]) -> int:
        """Update the rows matching the equality map and return the
            number updated.
        """
        ...

    def delete(self, table: str, where: dict[str, Any]) -> int:
        """Delete the rows matching the equality map and return the
            number deleted.
        """
        ...

    def table_name(self, name: str, prefix: str = '') -> str:
        """Apply the global and model prefixes to a logical name."""
        ...


@runtime_checkable
class RowProtocol(Protocol):
    """Interface for a generic row representation."""
    @property
    def data(self) -> dict:
        """Returns the underlying row data."""
        ...


@runtime_checkable
class ModelProtocol(Protocol):
    """Interface showing how a model should function."""
    @property
    def id_column(self) -> str:
        """Str with the name of the id column."""
        ...

    @property
    def columns(self) -> tuple[str]:
        """Tuple of str column names."""
        ...

    @property
    def data(self) -> dict:
        """Dict for storing model data."""
        ...

    @property
    def relations(self) -> dict:
        """Dict of loaded relation results by relation name."""
        ...

    @classmethod
    def add_hook(cls, event: str, hook: Callable):
        """Add the hook for the event."""
        ...

    @classmethod
    def remove_hook(cls, event: str, hook: Callable):
        """Remove the hook for the event."""
        ...

    @classmethod
    def clear_hooks(cls, event: str = None):
        """Remove all hooks for an event. If no event is specified,
            clear all hooks for all events.
        """
        ...

    @classmethod
    def invoke_hooks(cls, event: str, *args, **kwargs):
        """Invoke the hooks for the event, passing cls, *args, and
            **kwargs.
        """
        ...

    def __hash__(self) -> int:
        """Allow inclusion in sets."""
        ...

    def __eq__(self, other) -> bool:
        """Return True if types and hashes are equal, else False."""
        ...

    @classmethod
    def find(cls, id: Any) -> Optional[ModelProtocol]:
        """Find a record by its id and return it. Return None if it does
            not exist.
        """
        ...

    @classmethod
    def create(cls, data: dict, /, *, suppress_events: bool = False) -> Optional[ModelProtocol]:
        """Insert a new record to the datastore. Return instance."""
        ...

    @classmethod
    def create_many(cls, items: list[dict], /, *, suppress_events: bool = False) -> int:
        """Insert a batch of records and return the number of items inserted."""
        ...

    def update(self, updates: dict, /, *,
               suppress_events: bool = False) -> Optional[ModelProtocol]:
        """Persist the specified changes to the datastore. Return self
            in monad pattern.
        """
        ...

    def save(self, /, *, suppress_events: bool = False) -> Optional[ModelProtocol]:
        """Persist to the datastore. Return self in monad pattern."""
        ...

    def delete(self, /, *, suppress_events: bool = False) -> int:
        """Delete the record."""
        ...

    def reload(self) -> ModelProtocol:
        """Reload values from datastore. Return self in monad pattern."""
        ...

    @classmethod
    def query(cls, conditions: dict = None) -> QueryBuilderProtocol:
        """Return a QueryBuilderProtocol for the model."""
        ...


@runtime_checkable
class QueryBuilderProtocol(Protocol):
    """Interface showing how a query builder should function."""
    @property
    def table(self) -> str:
        """The name of the table."""
        ...

    @property
    def model(self) -> Type[ModelProtocol]:
        """The class of the relevant model."""
        ...

    def select(self, columns: str|list[str]|tuple[str]) -> QueryBuilderProtocol:
        """Sets the columns to select."""
        ...

    def where(self, column: str|dict, operator_or_value: Any = None,
              value: Any = None) -> QueryBuilderProtocol:
        """Add a predicate joined with AND."""
        ...

    def or_where(self, column: str|dict, operator_or_value: Any = None,
                 value: Any = None) -> QueryBuilderProtocol:
        """Add a predicate joined with OR."""
        ...

    def where_in(self, column: str, values: list|tuple) -> QueryBuilderProtocol:
        """Add an IN predicate."""
        ...

    def or_where_relation(self, relation: str, column: str,
                          operator_or_value: Any = None,
                          value: Any = None) -> QueryBuilderProtocol:
        """Join the relation's table and add a predicate on it joined
            with OR.
        """
        ...

    def with_(self, *relations: str) -> QueryBuilderProtocol:
        """Register relations for eager loading."""
        ...

    def group_by(self, *columns: str) -> QueryBuilderProtocol:
        """Adds GROUP BY columns."""
        ...

    def order_by(self, column: str, direction: str = 'asc') -> QueryBuilderProtocol:
        """Adds an ORDER BY column."""
        ...

    def limit(self, number: int) -> QueryBuilderProtocol:
        """Sets the maximum number of rows."""
        ...

    def offset(self, number: int) -> QueryBuilderProtocol:
        """Sets the number of rows to skip."""
        ...

    def count(self) -> int:
        """Returns the number of records matching the query."""
        ...

    def exists(self) -> bool:
        """Returns True if any record matches the query."""
        ...

    def get(self) -> Iterable[ModelProtocol|RowProtocol]:
        """Run the query and return a collection of results."""
        ...

    def first(self) -> Optional[ModelProtocol]:
        """Run the query and return the first result."""
        ...

    def first_or_fail(self) -> ModelProtocol:
        """Run the query and return the first result or raise."""
        ...

    def chunk(self, number: int) -> Generator[Iterable[ModelProtocol], None, None]:
        """Chunk all matching rows the specified number of rows at a time."""
        ...

    def update(self, values: dict) -> int:
        """Update the matching records and return the number updated."""
        ...

    def delete(self) -> int:
        """Delete the matching records and return the number deleted."""
        ...


@runtime_checkable
class RelationProtocol(Protocol):
    """Interface showing how a relation should function."""
    @property
    def owner_key(self) -> str:
        """The column on the declaring model's rows."""
        ...

    @property
    def related_key(self) -> str:
        """The column on the related model's rows."""
        ...

    def bind(self, parent: ModelProtocol) -> RelationProtocol:
        """Return a copy bound to the parent instance."""
        ...

    def query(self) -> QueryBuilderProtocol:
        """Creates the query for the related models of the parent."""
        ...

    def get_results(self) -> Iterable[ModelProtocol]:
        """Load the related models of the parent."""
        ...
