from __future__ import annotations
from .collection import Collection
from .errors import tert, vert, tressa
from .interfaces import ModelProtocol, QueryBuilderProtocol
from dataclasses import dataclass, field, replace
from typing import Any, Optional, Type


"""
    Puts the R in ORM. Relation descriptors are immutable: the registry
    resolves each declaration once into a descriptor, and `bind` makes
    a copy tied to a parent instance for the operations that need one.
    Eager loading is handled by the query builder; the descriptors only
    say which column on each side holds the key.
"""


@dataclass(frozen=True)
class Relation:
    """Base class for relation descriptors."""
    related: Type[ModelProtocol]
    foreign_key: str
    local_key: str
    parent: Optional[ModelProtocol] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        """Raises TypeError for invalid related, foreign_key, or
            local_key.
        """
        tert(isinstance(self.related, type), 'related must be a model class')
        tert(type(self.foreign_key) is str, 'foreign_key must be str')
        tert(type(self.local_key) is str, 'local_key must be str')

    @staticmethod
    def single_model_precondition(model) -> None:
        """Precondition check for a single model. Raises TypeError if
            the check fails.
        """
        tert(isinstance(model, ModelProtocol), 'model must implement ModelProtocol')

    @property
    def owner_key(self) -> str:
        """The column on the declaring model's rows that holds the key."""
        raise NotImplementedError

    @property
    def related_key(self) -> str:
        """The column on the related model's rows that holds the key."""
        raise NotImplementedError

    def bind(self, parent: ModelProtocol) -> Relation:
        """Return a copy bound to the parent instance. Raises TypeError
            if the precondition check fails.
        """
        self.single_model_precondition(parent)
        return replace(self, parent=parent)

    def owner_value(self) -> Any:
        """The parent's value for the owner key. Raises UsageError if
            the relation is not bound.
        """
        tressa(self.parent is not None,
               f'{self.__class__.__name__} is not bound to a parent')
        return self.parent.data.get(self.owner_key)

    def query(self) -> QueryBuilderProtocol:
        """Creates the query for the related models of the parent.
            Raises UsageError if the parent has no value for the owner
            key.
        """
        value = self.owner_value()
        tressa(value is not None, f'parent has no value for {self.owner_key}')
        return self.related.query().where(self.related_key, value)

    def get_results(self) -> Collection:
        """Load the related models of the parent. An unset owner key
            yields an empty Collection without querying.
        """
        if self.owner_value() is None:
            return Collection()
        return self.query().get()


@dataclass(frozen=True)
class HasOneOrMany(Relation):
    """Related rows hold foreign_key pointing at the parent's local_key."""

    @property
    def owner_key(self) -> str:
        return self.local_key

    @property
    def related_key(self) -> str:
        return self.foreign_key

    def save(self, model: ModelProtocol) -> Optional[ModelProtocol]:
        """Attach the model to the parent by setting its foreign key,
            then persist it. Return the model, or None if it could not
            be saved. Raises TypeError or UsageError for an invalid
            model or unbound/unsaved parent.
        """
        self.single_model_precondition(model)
        tert(isinstance(model, self.related),
             f'model must be instance of {self.related.__name__}')
        value = self.owner_value()
        tressa(value is not None, 'parent must be saved before children can be attached')
        model.data[self.foreign_key] = value
        return model.save()


@dataclass(frozen=True)
class HasOne(HasOneOrMany):
    """The parent owns at most one related row."""
    ...


@dataclass(frozen=True)
class HasMany(HasOneOrMany):
    """The parent owns any number of related rows."""
    ...


@dataclass(frozen=True)
class BelongsTo(Relation):
    """The parent's foreign_key column points at the related row's
        local_key. Inverse of HasOne and HasMany.
    """

    @property
    def owner_key(self) -> str:
        return self.foreign_key

    @property
    def related_key(self) -> str:
        return self.local_key

    def associate(self, owner: ModelProtocol) -> Optional[ModelProtocol]:
        """Point the parent at the owner and save the parent. Return the
            parent, or None if it could not be saved.
        """
        self.single_model_precondition(owner)
        tert(isinstance(owner, self.related),
             f'owner must be instance of {self.related.__name__}')
        tressa(self.parent is not None,
               f'{self.__class__.__name__} is not bound to a parent')
        value = owner.data.get(self.local_key)
        tressa(value is not None, 'owner must be saved before it can be associated')
        self.parent.data[self.foreign_key] = value
        return self.parent.save()

    def dissociate(self) -> Optional[ModelProtocol]:
        """Clear the parent's foreign key and save the parent."""
        tressa(self.parent is not None,
               f'{self.__class__.__name__} is not bound to a parent')
        self.parent.data[self.foreign_key] = None
        return self.parent.save()


class RelationDeclaration:
    """Class attribute created by has_one, has_many, and belongs_to. The
        registry resolves it into a relation descriptor on first use.
        Reading it from a model instance returns the related Collection.
    """
    kinds: tuple[str] = ('has_one', 'has_many', 'belongs_to')
    kind: str
    related: Type[ModelProtocol]|str
    foreign_key: Optional[str]
    local_key: Optional[str]
    name: Optional[str]

    def __init__(self, kind: str, related: Type[ModelProtocol]|str,
                 foreign_key: str = None, local_key: str = None) -> None:
        """Initialize the instance. Raises TypeError or ValueError for
            invalid kind, related, foreign_key, or local_key.
        """
        vert(kind in self.kinds, f'kind must be one of {self.kinds}')
        tert(type(related) in (type, str), 'related must be model class or str name')
        tert(foreign_key is None or type(foreign_key) is str, 'foreign_key must be str')
        tert(local_key is None or type(local_key) is str, 'local_key must be str')
        self.kind = kind
        self.related = related
        self.foreign_key = foreign_key
        self.local_key = local_key
        self.name = None

    def __repr__(self) -> str:
        related = self.related if type(self.related) is str else self.related.__name__
        return f"{self.__class__.__name__}(kind='{self.kind}', related='{related}', " + \
            f"name='{self.name}')"

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __get__(self, instance: Optional[ModelProtocol], owner: type = None):
        if instance is None:
            return self
        return instance.load(self.name)

    def resolve(self, owner: Type[ModelProtocol],
                related: Type[ModelProtocol]) -> Relation:
        """Build the relation descriptor using the owner's relation
            factory classmethod.
        """
        factory = getattr(owner, self.kind)
        return factory(related, self.foreign_key, self.local_key)


def has_one(related: Type[ModelProtocol]|str, foreign_key: str = None,
            local_key: str = None) -> RelationDeclaration:
    """Declare a HasOne relation. Usage syntax is like
        `avatar = has_one('Avatar')` in the User class body. If the
        foreign key column on the avatars table is not user_id, it can
        be specified.
    """
    return RelationDeclaration('has_one', related, foreign_key, local_key)

def has_many(related: Type[ModelProtocol]|str, foreign_key: str = None,
             local_key: str = None) -> RelationDeclaration:
    """Declare a HasMany relation. Usage syntax is like
        `posts = has_many('Post')` in the User class body. If the
        foreign key column on the posts table is not user_id, it can be
        specified.
    """
    return RelationDeclaration('has_many', related, foreign_key, local_key)

def belongs_to(related: Type[ModelProtocol]|str, foreign_key: str = None,
               local_key: str = None) -> RelationDeclaration:
    """Declare a BelongsTo relation. Usage syntax is like
        `user = belongs_to('User')` in the Post class body. If the
        foreign key column on the posts table is not user_id, it can be
        specified.
    """
    return RelationDeclaration('belongs_to', related, foreign_key, local_key)
