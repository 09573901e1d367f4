"""
    Activerow is a small active-record ORM: model classes mapped to
    tables, a query builder that compiles to parameterized SQL, soft
    deletes, and relations (has one, has many, belongs to) that are
    eager loaded with one query per relation. The database is reached
    through a DataAccessProtocol implementation; SqliteDatabase is
    included. Models are bound to a database by registering them with
    a Registry.
"""

from activerow.classes import (
    SqlModel,
    SqlQueryBuilder,
    SqliteContext,
    SqliteDatabase,
    Statement,
    Predicate,
    JoinSpec,
    EagerLoad,
)
from activerow.collection import Collection, Row
from activerow.errors import (
    UsageError,
    ModelNotFoundError,
    RelationNotFoundError,
)
from activerow.interfaces import (
    CursorProtocol,
    DBContextProtocol,
    DataAccessProtocol,
    StatementProtocol,
    ModelProtocol,
    QueryBuilderProtocol,
    RelationProtocol,
    RowProtocol,
)
from activerow.registry import (
    Registry,
    EntityDescriptor,
    table_name_for,
    foreign_key_for,
)
from activerow.relations import (
    Relation,
    HasOne,
    HasMany,
    BelongsTo,
    RelationDeclaration,
    has_one,
    has_many,
    belongs_to,
)
from activerow.version import version
import logging

logging.getLogger(__name__).addHandler(logging.NullHandler())
