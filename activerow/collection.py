from __future__ import annotations
from .errors import tert
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator


@dataclass
class Row:
    """Class for representing a row from a query when no better model exists."""
    data: dict = field()


class Collection:
    """Ordered container for query results and relation results."""
    items: list

    def __init__(self, items: Iterable[Any] = ()) -> None:
        """Initialize the instance. Raises TypeError for non-iterable
            items.
        """
        tert(hasattr(items, '__iter__'), 'items must be iterable')
        self.items = list(items)

    def __repr__(self) -> str:
        """Pretty str representation."""
        return f"{self.__class__.__name__}({self.items!r})"

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.items)

    def __bool__(self) -> bool:
        return len(self.items) > 0

    def __contains__(self, item: Any) -> bool:
        return item in self.items

    def __getitem__(self, key: int|slice) -> Any:
        """Index access. Slices return a new Collection."""
        if isinstance(key, slice):
            return self.__class__(self.items[key])
        return self.items[key]

    def __setitem__(self, key: int, value: Any) -> None:
        self.items[key] = value

    def __delitem__(self, key: int) -> None:
        del self.items[key]

    def __eq__(self, other) -> bool:
        """Collections compare equal to Collections, lists, and tuples
            holding equal items in the same order.
        """
        if isinstance(other, Collection):
            return self.items == other.items
        if type(other) in (list, tuple):
            return self.items == list(other)
        return False

    def count(self) -> int:
        """Count the number of items in the collection."""
        return len(self.items)

    def push(self, *values: Any) -> Collection:
        """Push one or more items onto the end of the collection. Return
            self in monad pattern.
        """
        self.items.extend(values)
        return self

    def append(self, value: Any) -> None:
        """Append a single item."""
        self.items.append(value)

    def first(self, default: Any = None) -> Any:
        """Return the first item or the default when empty."""
        return self.items[0] if self.items else default

    def is_empty(self) -> bool:
        return len(self.items) == 0

    def to_list(self) -> list:
        """Return a shallow copy of the items as a list."""
        return list(self.items)

    def pluck(self, path: str) -> Collection:
        """Extract the value at the dotted path from every item. Path
            segments are dict keys, model columns or relation names,
            or list indices; a `*` segment maps the rest of the path
            over a sequence. Missing values are None. Raises TypeError
            for a non-str path.
        """
        tert(type(path) is str, 'path must be str')
        segments = path.split('.')
        return self.__class__([_extract(item, segments) for item in self.items])


def _extract(value: Any, segments: list[str]) -> Any:
    """Follow the path segments into nested models, rows, dicts, and
        sequences.
    """
    for index, segment in enumerate(segments):
        if value is None:
            return None

        if isinstance(value, (Collection, list, tuple)):
            if segment == '*':
                rest = segments[index+1:]
                return Collection([
                    _extract(item, rest) if rest else item
                    for item in value
                ])
            if not segment.isdigit():
                return None
            position = int(segment)
            value = value[position] if position < len(value) else None
        elif isinstance(value, dict):
            value = value.get(segment)
        elif isinstance(value, Row):
            value = value.data.get(segment)
        elif hasattr(value, 'attribute') and hasattr(value, 'data'):
            value = value.attribute(segment)
        else:
            return None

    return value
