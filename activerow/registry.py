from __future__ import annotations
from .classes import SqlModel, SqlQueryBuilder
from .errors import tert, vert, tressa, RelationNotFoundError
from .interfaces import DataAccessProtocol
from .relations import Relation, RelationDeclaration
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Type
import inspect
import logging
import re


logger = logging.getLogger(__name__)


def _pascalcase_to_snake_case(name: str) -> str:
    """Simple function to turn PascalCase to snake_case.
        Borrowed from https://stackoverflow.com/a/1176023
    """
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()

def table_name_for(name: str) -> str:
    """Derive the logical table name from a class name, e.g.
        BlogPost -> blog_posts.
    """
    return _pascalcase_to_snake_case(name) + 's'

def foreign_key_for(name: str) -> str:
    """Derive the singular foreign key stem from a class name, e.g.
        BlogPost -> blog_post.
    """
    return _pascalcase_to_snake_case(name)


@dataclass(frozen=True)
class EntityDescriptor:
    """Static metadata for a registered model."""
    name: str = field()
    table: str = field()
    id_column: str = field()
    foreign_key: str = field()
    columns: tuple[str] = field()
    soft_deletes: bool = field(default=False)
    deleted_at_column: str = field(default='deleted_at')
    prefix: str = field(default='')

    @property
    def foreign_id_column(self) -> str:
        """The column other tables use to reference this model."""
        return f'{self.foreign_key}_{self.id_column}'


class Registry:
    """Explicit registry of model descriptors and their relations. Bind
        models with `@registry.register`; each model's descriptor is
        computed once there and never changes.
    """
    database: DataAccessProtocol
    _descriptors: dict[type, EntityDescriptor]
    _models: dict[str, type]
    _relations: dict[type, MappingProxyType]

    def __init__(self, database: DataAccessProtocol) -> None:
        """Initialize the instance. Raises TypeError for invalid
            database.
        """
        tert(isinstance(database, DataAccessProtocol),
             'database must implement DataAccessProtocol')
        self.database = database
        self._descriptors = {}
        self._models = {}
        self._relations = {}

    def __contains__(self, model: type) -> bool:
        return model in self._descriptors

    def register(self, model: Type[SqlModel]) -> Type[SqlModel]:
        """Register the model, computing its descriptor and generating
            its column properties. Usable as a class decorator. Raises
            TypeError, ValueError, or UsageError for an invalid model.
        """
        tert(isinstance(model, type) and issubclass(model, SqlModel),
             'model must be SqlModel subclass')
        if model in self._descriptors:
            return model
        tressa(model.__dict__.get('registry') in (None, self),
               f'{model.__name__} is already registered elsewhere')
        vert(model.__name__ not in self._models,
             f'a different model named {model.__name__} is already registered')

        descriptor = self._describe(model)
        self._descriptors[model] = descriptor
        self._models[model.__name__] = model
        model.registry = self
        model.create_column_properties()
        logger.debug('registered %s as table %s', model.__name__, descriptor.table)
        return model

    def _describe(self, model: Type[SqlModel]) -> EntityDescriptor:
        """Compute the descriptor for a model. Raises TypeError or
            ValueError for invalid model attributes.
        """
        tert(type(model.columns) in (tuple, list), 'columns must be tuple[str]')
        tert(all([type(c) is str for c in model.columns]), 'columns must be tuple[str]')
        tert(type(model.id_column) is str, 'id_column must be str')
        tert(type(model.prefix) is str, 'prefix must be str')
        tert(model.table is None or type(model.table) is str, 'table must be str')
        vert(model.id_column in model.columns,
             f'{model.id_column} must be in columns')
        if model.soft_deletes:
            vert(model.deleted_at_column in model.columns,
                 f'{model.deleted_at_column} must be in columns of soft-deleting model')

        logical = model.table or table_name_for(model.__name__)
        return EntityDescriptor(
            name=model.__name__,
            table=self.database.table_name(logical, model.prefix),
            id_column=model.id_column,
            foreign_key=foreign_key_for(model.__name__),
            columns=tuple(model.columns),
            soft_deletes=bool(model.soft_deletes),
            deleted_at_column=model.deleted_at_column,
            prefix=model.prefix,
        )

    def descriptor(self, model: type) -> EntityDescriptor:
        """Return the descriptor of a registered model. Raises
            UsageError if the model is not registered.
        """
        tressa(model in self._descriptors, f'{model.__name__} is not registered')
        return self._descriptors[model]

    def resolve(self, model_or_name: type|str) -> Type[SqlModel]:
        """Return the registered model class for a class or class name.
            Raises RelationNotFoundError if it is not registered.
        """
        if type(model_or_name) is str:
            if model_or_name not in self._models:
                raise RelationNotFoundError(f'no registered model named {model_or_name}')
            return self._models[model_or_name]
        if model_or_name not in self._descriptors:
            raise RelationNotFoundError(f'{model_or_name.__name__} is not registered')
        return model_or_name

    def relations(self, model: type) -> MappingProxyType:
        """Return the read-only map of relation name to relation
            descriptor for the model, resolving the declarations on
            first use. Raises ValueError if a relation name collides
            with a column.
        """
        descriptor = self.descriptor(model)
        if model not in self._relations:
            resolved: dict[str, Relation] = {}
            for name in dir(model):
                declaration = inspect.getattr_static(model, name, None)
                if not isinstance(declaration, RelationDeclaration):
                    continue
                vert(name not in descriptor.columns,
                     f'relation {name} collides with a column of {model.__name__}')
                related = self.resolve(declaration.related)
                resolved[name] = declaration.resolve(model, related)
            self._relations[model] = MappingProxyType(resolved)
        return self._relations[model]

    def relation(self, model: type, name: str) -> Relation:
        """Return the named relation descriptor. Raises
            RelationNotFoundError if the model declares no such
            relation.
        """
        relations = self.relations(model)
        if name not in relations:
            raise RelationNotFoundError(f'{model.__name__} has no relation named {name}')
        return relations[name]

    def query(self, model: type) -> SqlQueryBuilder:
        """Return a new query builder for the model."""
        self.descriptor(model)
        return model.query_builder_class(model, self)
