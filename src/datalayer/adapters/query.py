"""Deferred, composable queries over a persistence context."""

import copy
import logging
from typing import Any, Callable, Generic, Iterator, List, Optional, Tuple, Type, TypeVar, Union

from sqlalchemy import inspect
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import ColumnElement, Select

from datalayer.adapters.context import AbstractPersistenceContext
from datalayer.domain.exceptions import AmbiguousResultError, InvalidIncludeError

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT")

Predicate = Union[ColumnElement, Callable[[Type], ColumnElement]]
Ordering = Union[Callable[[Select], Select], Any, Tuple[Any, ...], List[Any]]


def parse_includes(includes: Optional[str]) -> List[str]:
    """Split a comma separated include string, dropping empty segments."""
    if not includes:
        return []
    return [path.strip() for path in includes.split(",") if path.strip()]


def _loader_option(entity_type: Type, path: str):
    option = None
    current = entity_type
    for name in path.split("."):
        relationships = inspect(current).relationships
        if name not in relationships:
            raise InvalidIncludeError(entity_type.__name__, path)
        attribute = getattr(current, name)
        option = selectinload(attribute) if option is None else option.selectinload(attribute)
        current = relationships[name].mapper.class_
    return option


class Query(Generic[EntityT]):
    """
    Lazy description of a query over one entity set.

    Building or composing a query performs no I/O. Every iteration executes it
    again against the context. Filters and ordering always apply before
    ``skip``/``top``; without an explicit ordering results come ascending by
    primary key so pagination stays deterministic.
    """

    def __init__(self, context: AbstractPersistenceContext, entity_type: Type[EntityT]):
        self._context = context
        self.entity_type = entity_type
        self._predicates: Tuple[ColumnElement, ...] = ()
        self._ordering: Optional[Ordering] = None
        self._skip = 0
        self._top: Optional[int] = None
        self._includes: Tuple[str, ...] = ()
        self._options: Tuple[Any, ...] = ()
        self._read_only = False

    # composition

    def where(self, predicate: Optional[Predicate]) -> "Query[EntityT]":
        if predicate is None:
            return self
        if callable(predicate):
            predicate = predicate(self.entity_type)
        return self._replace(_predicates=self._predicates + (predicate,))

    def order_by(self, ordering: Optional[Ordering]) -> "Query[EntityT]":
        return self._replace(_ordering=ordering)

    def skip(self, count: Optional[int]) -> "Query[EntityT]":
        count = count or 0
        if count < 0:
            raise ValueError(f"skip must not be negative, got {count}")
        return self._replace(_skip=count)

    def top(self, count: Optional[int]) -> "Query[EntityT]":
        if count is not None and count < 0:
            raise ValueError(f"top must not be negative, got {count}")
        return self._replace(_top=count)

    def include(self, includes: Optional[str]) -> "Query[EntityT]":
        paths = [p for p in parse_includes(includes) if p not in self._includes]
        if not paths:
            return self
        options = tuple(_loader_option(self.entity_type, path) for path in paths)
        return self._replace(
            _includes=self._includes + tuple(paths),
            _options=self._options + options,
        )

    def as_read_only(self, read_only: bool = True) -> "Query[EntityT]":
        return self._replace(_read_only=read_only)

    @property
    def read_only(self) -> bool:
        return self._read_only

    @property
    def includes(self) -> Tuple[str, ...]:
        return self._includes

    @property
    def statement(self) -> Select:
        return self._build()

    # execution

    def __iter__(self) -> Iterator[EntityT]:
        logger.debug(f"Executing query on {self.entity_type.__name__}: {self!r}")
        return iter(self._context.execute(self._build(), read_only=self._read_only))

    def all(self) -> List[EntityT]:
        return list(self)

    def first(self) -> Optional[EntityT]:
        limit = 1 if self._top is None else min(1, self._top)
        return next(iter(self.top(limit)), None)

    def single_or_none(self) -> Optional[EntityT]:
        """Return the only result, ``None`` when empty; more than one is an integrity error."""
        limit = 2 if self._top is None else min(2, self._top)
        results = list(self.top(limit))
        if len(results) > 1:
            raise AmbiguousResultError(self.entity_type.__name__, detail=repr(self))
        return results[0] if results else None

    def count(self) -> int:
        return self._context.count(self._build(with_options=False))

    # internals

    def _build(self, with_options: bool = True) -> Select:
        statement = self._context.entity_set(self.entity_type)
        if self._predicates:
            statement = statement.where(*self._predicates)
        statement = self._apply_ordering(statement)
        if self._skip:
            statement = statement.offset(self._skip)
        if self._top is not None:
            statement = statement.limit(self._top)
        if with_options and self._options:
            statement = statement.options(*self._options)
        return statement

    def _apply_ordering(self, statement: Select) -> Select:
        ordering = self._ordering
        if ordering is None:
            return statement.order_by(*(c.asc() for c in inspect(self.entity_type).primary_key))
        if callable(ordering):
            return ordering(statement)
        if isinstance(ordering, (list, tuple)):
            return statement.order_by(*ordering)
        return statement.order_by(ordering)

    def _replace(self, **changes) -> "Query[EntityT]":
        clone = copy.copy(self)
        clone.__dict__.update(changes)
        return clone

    def __repr__(self):
        return (
            f"<Query {self.entity_type.__name__} filters={len(self._predicates)} "
            f"skip={self._skip} top={self._top} includes={list(self._includes)} "
            f"read_only={self._read_only}>"
        )
