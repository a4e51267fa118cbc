"""
Registration table telling a unit of work which context an entity lives in.

An entity type is registered once with the context type that stores it and
the repository class that serves it. The unit of work consults the table when
it builds a repository, so callers only name the entity.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Type

from datalayer.adapters.context import AbstractPersistenceContext
from datalayer.adapters.repository import AbstractRepository, SqlAlchemyRepository
from datalayer.domain.exceptions import MissingContextError, RegistrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Registration:
    entity_type: type
    context_type: Type[AbstractPersistenceContext]
    repository_type: Type[AbstractRepository] = SqlAlchemyRepository
    key_type: type = int


class RepositoryRegistry:
    def __init__(self):
        self._registrations: Dict[type, Registration] = {}
        self._lock = threading.Lock()

    def register(
        self,
        entity_type: type,
        context_type: Type[AbstractPersistenceContext],
        repository_type: Type[AbstractRepository] = SqlAlchemyRepository,
        key_type: type = int,
    ) -> Registration:
        registration = Registration(entity_type, context_type, repository_type, key_type)
        with self._lock:
            existing = self._registrations.get(entity_type)
            if existing is not None:
                if existing == registration:
                    return existing
                raise RegistrationError(
                    f"{entity_type.__name__} already registered with "
                    f"{existing.context_type.__name__}/{existing.repository_type.__name__}",
                    entity_type=entity_type.__name__,
                )
            self._registrations[entity_type] = registration
        logger.info(f"Registered {entity_type.__name__} in {context_type.__name__}")
        return registration

    def registration_for(self, entity_type: type) -> Registration:
        try:
            return self._registrations[entity_type]
        except KeyError:
            raise MissingContextError(
                None,
                operation="repository",
                entity_type=entity_type.__name__,
                message=f"No context registered for {entity_type.__name__}",
            ) from None

    def is_registered(self, entity_type: type) -> bool:
        return entity_type in self._registrations

    def entities_for(self, context_type: Type[AbstractPersistenceContext]) -> List[type]:
        return [
            r.entity_type for r in self._registrations.values() if r.context_type is context_type
        ]

    def clear(self):
        with self._lock:
            self._registrations.clear()

    def __len__(self):
        return len(self._registrations)


default_registry = RepositoryRegistry()


def register_entity(
    context_type: Type[AbstractPersistenceContext],
    repository_type: Type[AbstractRepository] = SqlAlchemyRepository,
    key_type: type = int,
    registry: RepositoryRegistry = default_registry,
):
    """Class decorator registering an entity type with ``context_type``."""

    def decorator(entity_type):
        registry.register(entity_type, context_type, repository_type, key_type)
        return entity_type

    return decorator
