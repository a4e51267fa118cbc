import abc
import logging
from typing import Any, Generic, Iterable, List, Optional, Type, TypeVar

from datalayer.adapters.context import AbstractPersistenceContext
from datalayer.adapters.query import Ordering, Predicate, Query
from datalayer.domain.exceptions import NotFoundError

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT")
KeyT = TypeVar("KeyT")


class AbstractRepository(abc.ABC, Generic[EntityT, KeyT]):
    """
    CRUD and query facade for one entity type.

    Getters return lazy queries; setters and removals only stage changes in
    the context. Nothing is persisted until the owning unit of work commits.
    """

    def __init__(self, entity_type: Type[EntityT], key_type: Type[KeyT] = int):
        self.entity_type = entity_type
        self.key_type = key_type

    @property
    def entity_name(self) -> str:
        return self.entity_type.__name__

    # getters

    def get(self, key: KeyT, includes: str = "", read_only: bool = False) -> Optional[EntityT]:
        """
        Get the entity with the given key, including desired navigation properties.

        Returns None when nothing matches.

        Raises:
            AmbiguousResultError: If more than one entity carries the key
        """
        return self._get(key, includes=includes, read_only=read_only)

    def get_all(self, includes: str = "", read_only: bool = False) -> Query[EntityT]:
        """All entities of the type, ascending by key."""
        return self.find(includes=includes, read_only=read_only)

    def find(
        self,
        predicate: Optional[Predicate] = None,
        order_by: Optional[Ordering] = None,
        skip: Optional[int] = None,
        top: Optional[int] = None,
        includes: str = "",
        read_only: bool = False,
    ) -> Query[EntityT]:
        """
        Retrieve entities with optional predicate, ordering, paging and includes.

        Args:
            predicate: Boolean clause, or a callable taking the entity class and
                returning one. Defaults to match all.
            order_by: Callable receiving and returning the select statement, or
                order clause(s). Defaults to ascending by key.
            skip: Number of leading results to drop.
            top: Maximum number of results.
            includes: Comma separated relationship paths to load eagerly.
            read_only: Return untracked, detached entities.

        Returns:
            A lazy query; nothing runs until it is iterated.
        """
        return self._find(predicate, order_by, skip, top, includes, read_only)

    # setters

    def add(self, entity: EntityT) -> EntityT:
        logger.debug(f"Staging insert of {self.entity_name}")
        return self._add(entity)

    def add_range(self, entities: Iterable[EntityT]) -> List[EntityT]:
        return [self.add(entity) for entity in entities]

    def update(self, entity: EntityT) -> EntityT:
        """Stage the entity for update; returns the instance the context tracks."""
        logger.debug(f"Staging update of {self.entity_name} {getattr(entity, 'id', None)!r}")
        return self._update(entity)

    def update_range(self, entities: Iterable[EntityT]) -> List[EntityT]:
        return [self.update(entity) for entity in entities]

    # removals

    def remove(self, target: Any) -> EntityT:
        """
        Stage removal of an entity, or of the entity stored under a key.

        Raises:
            NotFoundError: If a key was given and nothing is stored under it
        """
        if isinstance(target, self.entity_type):
            return self._remove(target)
        entity = self._get_by_key(target)
        if entity is None:
            raise NotFoundError(self.entity_name, target, operation="remove")
        return self._remove(entity)

    def remove_range(self, targets: Iterable[Any]) -> List[EntityT]:
        """
        Stage removal of several entities or keys.

        Keys with no stored entity are skipped.
        """
        entities, keys = [], []
        for target in targets:
            (entities if isinstance(target, self.entity_type) else keys).append(target)
        if keys:
            entities.extend(self._find_by_keys(keys))
        return [self._remove(entity) for entity in entities]

    @abc.abstractmethod
    def _get(self, key, includes: str, read_only: bool) -> Optional[EntityT]:
        raise NotImplementedError

    @abc.abstractmethod
    def _get_by_key(self, key) -> Optional[EntityT]:
        raise NotImplementedError

    @abc.abstractmethod
    def _find(self, predicate, order_by, skip, top, includes, read_only) -> Query[EntityT]:
        raise NotImplementedError

    @abc.abstractmethod
    def _find_by_keys(self, keys: List[Any]) -> List[EntityT]:
        raise NotImplementedError

    @abc.abstractmethod
    def _add(self, entity: EntityT) -> EntityT:
        raise NotImplementedError

    @abc.abstractmethod
    def _update(self, entity: EntityT) -> EntityT:
        raise NotImplementedError

    @abc.abstractmethod
    def _remove(self, entity: EntityT) -> EntityT:
        raise NotImplementedError


class SqlAlchemyRepository(AbstractRepository[EntityT, KeyT]):
    def __init__(
        self,
        context: AbstractPersistenceContext,
        entity_type: Type[EntityT],
        key_type: Type[KeyT] = int,
    ):
        super().__init__(entity_type, key_type)
        self.context = context

    def query(self) -> Query[EntityT]:
        return Query(self.context, self.entity_type)

    def _get(self, key, includes, read_only):
        return self.find(
            lambda entity: entity.id == key,
            includes=includes,
            read_only=read_only,
        ).single_or_none()

    def _get_by_key(self, key):
        return self.context.get(self.entity_type, key)

    def _find(self, predicate, order_by, skip, top, includes, read_only):
        return (
            self.query()
            .where(predicate)
            .order_by(order_by)
            .skip(skip)
            .top(top)
            .include(includes)
            .as_read_only(read_only)
        )

    def _find_by_keys(self, keys):
        # inner join of stored entities with the requested keys
        return self.find(lambda entity: entity.id.in_(keys)).all()

    def _add(self, entity):
        return self.context.add(entity)

    def _update(self, entity):
        return self.context.mark_modified(entity)

    def _remove(self, entity):
        return self.context.delete(entity)

    def __repr__(self):
        return f"<{type(self).__name__} {self.entity_name}[{self.key_type.__name__}] on {self.context!r}>"
