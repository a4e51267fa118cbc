"""Units of work coordinating persistence contexts and their repositories."""

from __future__ import annotations

import abc
import enum
import logging
import threading
from typing import Dict, List, Optional, Tuple, Type

from datalayer.adapters.context import AbstractPersistenceContext
from datalayer.adapters.repository import AbstractRepository, SqlAlchemyRepository
from datalayer.domain.exceptions import (
    MissingContextError,
    RegistrationError,
    RepositoryError,
    StorageFailureError,
    TransactionMisuseError,
)
from datalayer.service_layer.registry import RepositoryRegistry, default_registry

logger = logging.getLogger(__name__)


class AbstractUnitOfWork(abc.ABC):
    """
    Owns persistence contexts and lazily builds one repository per
    (entity type, key type) pair.

    Not meant to be shared between threads: only the repository cache is
    lock-guarded so that lazy construction is an atomic get-or-insert.
    """

    def __init__(self, registry: RepositoryRegistry = default_registry):
        self.registry = registry
        self._repositories: Dict[Tuple[type, type], AbstractRepository] = {}
        self._lock = threading.RLock()
        self._disposed = False

    def __enter__(self) -> AbstractUnitOfWork:
        self._ensure_open()
        return self

    def __exit__(self, *args):
        self.dispose()

    @property
    def disposed(self) -> bool:
        return self._disposed

    def repository(
        self,
        entity_type: type,
        key_type: Optional[type] = None,
        context_type: Optional[Type[AbstractPersistenceContext]] = None,
    ) -> AbstractRepository:
        """
        Get the repository for ``entity_type``, building it on first use.

        The context it binds to comes from the registry, or from
        ``context_type`` when given. ``key_type`` defaults to the registered
        key type, ``int`` for unregistered entities.

        Raises:
            MissingContextError: If the required context is not available
        """
        self._ensure_open()
        if key_type is None:
            key_type = self._registered_key_type(entity_type)
        cache_key = (entity_type, key_type)
        with self._lock:
            repository = self._repositories.get(cache_key)
            if repository is None:
                repository = self._build_repository(entity_type, key_type, context_type)
                self._repositories[cache_key] = repository
                logger.debug(f"Built {repository!r}")
            elif context_type is not None and not isinstance(
                getattr(repository, "context", None), context_type
            ):
                raise RegistrationError(
                    f"Repository for {entity_type.__name__} is bound to another context",
                    entity_type=entity_type.__name__,
                )
        return repository

    def _registered_key_type(self, entity_type) -> type:
        if self.registry.is_registered(entity_type):
            return self.registry.registration_for(entity_type).key_type
        return int

    def _new_repository(self, context, entity_type, key_type) -> AbstractRepository:
        if self.registry.is_registered(entity_type):
            repository_type = self.registry.registration_for(entity_type).repository_type
        else:
            repository_type = SqlAlchemyRepository
        return repository_type(context, entity_type, key_type)

    def _ensure_open(self):
        if self._disposed:
            raise TransactionMisuseError(f"{type(self).__name__} has been disposed")

    @abc.abstractmethod
    def _build_repository(self, entity_type, key_type, context_type) -> AbstractRepository:
        raise NotImplementedError

    @abc.abstractmethod
    def dispose(self):
        raise NotImplementedError


class UnitOfWork(AbstractUnitOfWork):
    """
    Multi-context unit of work.

    Contexts are indexed by their type; at most one per type is kept and the
    first one registered wins. Every held context is disposed with the unit
    of work.
    """

    def __init__(
        self,
        *contexts: AbstractPersistenceContext,
        registry: RepositoryRegistry = default_registry,
        strict_rollback: bool = False,
    ):
        super().__init__(registry)
        self.strict_rollback = strict_rollback
        self._contexts: Dict[type, AbstractPersistenceContext] = {}
        for context in contexts:
            self._register_context(context)

    def __enter__(self) -> UnitOfWork:
        return super().__enter__()

    @property
    def context_types(self) -> List[type]:
        return list(self._contexts)

    def context(self, context_type: Type[AbstractPersistenceContext]) -> AbstractPersistenceContext:
        """
        Get the context of the given type.

        A missing context is default-constructed and registered, so this unit
        of work owns and disposes it like the ones it was given.
        """
        self._ensure_open()
        with self._lock:
            context = self._contexts.get(context_type)
            if context is None:
                logger.info(f"No {context_type.__name__} registered, constructing default")
                context = context_type()
                self._register_context(context)
        return context

    def commit(self, context_type: Type[AbstractPersistenceContext]) -> int:
        """
        Persist the staged changes of one context.

        Returns:
            Number of affected records

        Raises:
            MissingContextError: If no context of that type is registered
            StorageFailureError: If persisting failed; the context was rolled back
        """
        context = self._require_context(context_type, "commit")
        changes = context.save_changes()
        logger.info(f"Committed {changes} change(s) in {context_type.__name__}")
        return changes

    def rollback(self, context_type: Type[AbstractPersistenceContext]):
        """
        Discard staged changes of one context, reloading tracked entities.

        An unregistered context type is a no-op unless ``strict_rollback``.
        """
        self._ensure_open()
        context = self._contexts.get(context_type)
        if context is None:
            if self.strict_rollback:
                raise MissingContextError(context_type, "rollback")
            logger.warning(f"Rollback ignored, no {context_type.__name__} registered")
            return
        context.reload()
        logger.info(f"Rolled back {context_type.__name__}")

    def commit_all(self) -> int:
        """
        Commit every context in registration order.

        When one fails, it and every context not yet committed are rolled
        back. The raised error lists the contexts that were already committed.
        """
        self._ensure_open()
        contexts = list(self._contexts.items())
        committed: List[type] = []
        total = 0
        for position, (context_type, context) in enumerate(contexts):
            try:
                total += context.save_changes()
            except StorageFailureError as e:
                for remaining_type, remaining in contexts[position + 1:]:
                    self._rollback_after_failure(remaining_type, remaining)
                logger.error(
                    f"Commit of {context_type.__name__} failed after committing "
                    f"{[t.__name__ for t in committed]}"
                )
                raise StorageFailureError(
                    f"Commit of {context_type.__name__} failed: {e}",
                    operation="commit",
                    committed=committed,
                ) from e
            committed.append(context_type)
        logger.info(f"Committed {total} change(s) across {len(committed)} context(s)")
        return total

    def rollback_all(self):
        self._ensure_open()
        for context_type in list(self._contexts):
            self.rollback(context_type)

    def dispose(self):
        if self._disposed:
            return
        self._disposed = True
        failures = []
        for context_type, context in self._contexts.items():
            try:
                context.dispose()
            except Exception as e:
                logger.error(f"Disposing {context_type.__name__} failed: {e}")
                failures.append(e)
        self._repositories.clear()
        logger.debug(f"Disposed unit of work with {len(self._contexts)} context(s)")
        if failures:
            raise failures[0]

    def _register_context(self, context: AbstractPersistenceContext):
        context_type = type(context)
        if context_type in self._contexts:
            logger.warning(f"Ignoring second {context_type.__name__}, first registration wins")
            return
        self._contexts[context_type] = context
        logger.info(f"Registered context {context_type.__name__}")

    def _require_context(self, context_type, operation: str) -> AbstractPersistenceContext:
        self._ensure_open()
        context = self._contexts.get(context_type)
        if context is None:
            raise MissingContextError(context_type, operation)
        return context

    def _build_repository(self, entity_type, key_type, context_type):
        if context_type is None:
            context_type = self.registry.registration_for(entity_type).context_type
        context = self._contexts.get(context_type)
        if context is None:
            raise MissingContextError(context_type, "repository", entity_type=entity_type.__name__)
        return self._new_repository(context, entity_type, key_type)

    @staticmethod
    def _rollback_after_failure(context_type, context):
        try:
            context.reload()
        except RepositoryError:
            logger.exception(f"Rolling back {context_type.__name__} after a failed commit failed")


class TransactionState(enum.Enum):
    IDLE = "idle"
    BEGUN = "begun"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DISPOSED = "disposed"


class TransactionalUnitOfWork(AbstractUnitOfWork):
    """
    Single-context unit of work around one explicit transaction.

    ``begin`` opens the transaction; ``commit`` or ``rollback`` ends it and
    disposes the context, after which the unit of work is spent. Used as a
    context manager it begins on enter and rolls back on exit unless
    committed.
    """

    def __init__(
        self,
        context: AbstractPersistenceContext,
        registry: RepositoryRegistry = default_registry,
    ):
        super().__init__(registry)
        self.context = context
        self._state = TransactionState.IDLE
        self.outcome: Optional[TransactionState] = None

    def __enter__(self) -> TransactionalUnitOfWork:
        self.begin()
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._state is not TransactionState.BEGUN:
            self.dispose()
            return
        try:
            self.rollback()
        except Exception:
            if exc_type is None:
                raise
            # the exception leaving the block takes precedence
            logger.exception("Rollback on exit failed")

    @property
    def state(self) -> TransactionState:
        return self._state

    def begin(self):
        self._ensure_open()
        if self._state is not TransactionState.IDLE:
            raise TransactionMisuseError(f"Cannot begin transaction in state {self._state.value}")
        self.context.begin_transaction()
        self._state = TransactionState.BEGUN
        logger.debug(f"Transaction begun on {type(self.context).__name__}")

    def commit(self) -> int:
        """
        Commit the transaction, rolling back instead if committing fails.

        The context is disposed either way.
        """
        self._require_begun("commit")
        try:
            changes = self.context.commit_transaction()
            self.outcome = TransactionState.COMMITTED
            logger.info(f"Committed transaction with {changes} change(s)")
            return changes
        except Exception:
            self.outcome = TransactionState.ROLLED_BACK
            logger.error("Transaction commit failed, rolling back")
            try:
                self.context.rollback_transaction()
            except RepositoryError:
                logger.exception("Rollback after failed commit failed")
            raise
        finally:
            self.dispose()

    def rollback(self):
        self._require_begun("rollback")
        try:
            self.context.rollback_transaction()
            self.outcome = TransactionState.ROLLED_BACK
            logger.info("Rolled back transaction")
        finally:
            self.dispose()

    def dispose(self):
        if self._disposed:
            return
        self._disposed = True
        self._state = TransactionState.DISPOSED
        self._repositories.clear()
        self.context.dispose()

    def _require_begun(self, operation: str):
        if self._state is not TransactionState.BEGUN:
            raise TransactionMisuseError(f"Cannot {operation} transaction in state {self._state.value}")

    def _build_repository(self, entity_type, key_type, context_type):
        if context_type is None and self.registry.is_registered(entity_type):
            context_type = self.registry.registration_for(entity_type).context_type
        if context_type is not None and not isinstance(self.context, context_type):
            raise MissingContextError(context_type, "repository", entity_type=entity_type.__name__)
        return self._new_repository(self.context, entity_type, key_type)
