"""Persistence contexts - the storage session a repository works against."""

import abc
import logging
import threading
from typing import Any, Dict, List, Optional, Type

from sqlalchemy import create_engine, event, func, inspect, select
from sqlalchemy.exc import InvalidRequestError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.sql import Select

from datalayer import config
from datalayer.domain.exceptions import StorageFailureError, TransactionMisuseError

logger = logging.getLogger(__name__)


class AbstractPersistenceContext(abc.ABC):
    """Capabilities a repository and a unit of work expect from a storage session."""

    @abc.abstractmethod
    def entity_set(self, entity_type: Type) -> Select:
        raise NotImplementedError

    @abc.abstractmethod
    def execute(self, statement: Select, read_only: bool = False) -> List[Any]:
        raise NotImplementedError

    @abc.abstractmethod
    def count(self, statement: Select) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def get(self, entity_type: Type, key: Any) -> Optional[Any]:
        raise NotImplementedError

    @abc.abstractmethod
    def add(self, entity):
        raise NotImplementedError

    @abc.abstractmethod
    def mark_modified(self, entity):
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, entity):
        raise NotImplementedError

    @abc.abstractmethod
    def pending_count(self) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def save_changes(self) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def reload(self):
        raise NotImplementedError

    @abc.abstractmethod
    def begin_transaction(self):
        raise NotImplementedError

    @abc.abstractmethod
    def commit_transaction(self) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def rollback_transaction(self):
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def in_transaction(self) -> bool:
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def disposed(self) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def dispose(self):
        raise NotImplementedError


_SESSION_FACTORIES: Dict[str, sessionmaker] = {}
_SESSION_FACTORIES_LOCK = threading.Lock()


class SqlAlchemyContext(AbstractPersistenceContext):
    """
    Persistence context backed by a SQLAlchemy ORM session.

    Subclass it once per logical database; the subclass is the context *type*
    a unit of work indexes by. ``database_name`` selects the
    ``<NAME>_DATABASE_URI`` setting used when no session factory is passed.
    """

    database_name: Optional[str] = None

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory or self.default_session_factory()
        self.session = self.session_factory()  # type: Session
        self._transaction = None
        self._flushed_changes = 0
        self._disposed = False
        event.listen(self.session, "after_flush", self._count_flushed_changes)

    @classmethod
    def default_session_factory(cls) -> sessionmaker:
        uri = config.get_database_uri(cls.database_name)
        with _SESSION_FACTORIES_LOCK:
            factory = _SESSION_FACTORIES.get(uri)
            if factory is None:
                engine_options = {"echo": config.get_sql_echo()}
                isolation_level = config.get_isolation_level()
                if isolation_level and not uri.startswith("sqlite"):
                    engine_options["isolation_level"] = isolation_level
                factory = sessionmaker(bind=create_engine(uri, **engine_options))
                _SESSION_FACTORIES[uri] = factory
                logger.info(f"Created session factory for {cls.__name__}")
        return factory

    @property
    def name(self) -> str:
        return type(self).__name__

    # queries

    def entity_set(self, entity_type: Type) -> Select:
        return select(entity_type)

    def execute(self, statement: Select, read_only: bool = False) -> List[Any]:
        """
        Run ``statement`` and return the entities it selects.

        Read-only statements run in a throwaway session joined to this
        session's connection: they see its flushed changes, but the returned
        instances are detached and never tracked here.
        """
        self._ensure_open()
        try:
            if not read_only:
                return list(self.session.scalars(statement))
            self.session.flush()
            with Session(bind=self.session.connection(), autoflush=False) as reader:
                return list(reader.scalars(statement))
        except SQLAlchemyError as e:
            logger.error(f"Query failed in {self.name}: {e}")
            raise StorageFailureError(f"Query failed: {e}", operation="query") from e

    def count(self, statement: Select) -> int:
        self._ensure_open()
        counting = select(func.count()).select_from(statement.order_by(None).subquery())
        try:
            return self.session.scalar(counting)
        except SQLAlchemyError as e:
            logger.error(f"Count failed in {self.name}: {e}")
            raise StorageFailureError(f"Count failed: {e}", operation="count") from e

    def get(self, entity_type: Type, key: Any) -> Optional[Any]:
        self._ensure_open()
        try:
            return self.session.get(entity_type, key)
        except SQLAlchemyError as e:
            logger.error(f"Lookup of {entity_type.__name__} {key!r} failed: {e}")
            raise StorageFailureError(f"Lookup failed: {e}", operation="get") from e

    # staged changes

    def add(self, entity):
        self._ensure_open()
        self.session.add(entity)
        return entity

    def mark_modified(self, entity):
        """Stage ``entity`` for update whether or not any attribute changed."""
        self._ensure_open()
        if inspect(entity).transient:
            logger.warning(f"Update of unsaved {type(entity).__name__} staged as insert")
        tracked = self._attach(entity)
        state = inspect(tracked)
        if state.persistent:
            column = self._first_data_column(type(tracked))
            if column is not None:
                # loads the attribute when expired, flag_modified needs it present
                getattr(tracked, column)
                flag_modified(tracked, column)
        return tracked

    def delete(self, entity):
        self._ensure_open()
        state = inspect(entity)
        if state.pending:
            self.session.expunge(entity)
            return entity
        if state.transient:
            logger.warning(f"Ignoring removal of unsaved {type(entity).__name__}")
            return entity
        self.session.delete(self._attach(entity))
        return entity

    def pending_count(self) -> int:
        modified = sum(1 for e in self.session.dirty if self.session.is_modified(e))
        return len(self.session.new) + len(self.session.deleted) + modified

    def save_changes(self) -> int:
        """
        Persist staged changes and return the number of affected records.

        Inside an explicit transaction the changes are only flushed; the
        transaction owner decides when they become durable.
        """
        self._ensure_open()
        try:
            self.session.flush()
            changes = self._flushed_changes
            if self._transaction is None:
                self.session.commit()
                self._flushed_changes = 0
            return changes
        except SQLAlchemyError as e:
            logger.error(f"Saving changes in {self.name} failed: {e}")
            if self._transaction is None:
                self._discard()
            raise StorageFailureError(f"Saving changes failed: {e}", operation="commit") from e

    def reload(self):
        """Discard staged changes and reload every tracked entity from the store."""
        self._ensure_open()
        try:
            self._discard()
            for entity in list(self.session.identity_map.values()):
                try:
                    self.session.refresh(entity)
                except InvalidRequestError:
                    # row vanished from the store
                    self.session.expunge(entity)
        except SQLAlchemyError as e:
            logger.error(f"Reloading {self.name} failed: {e}")
            raise StorageFailureError(f"Rollback failed: {e}", operation="rollback") from e

    # explicit transactions

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None and self._transaction.is_active

    def begin_transaction(self):
        self._ensure_open()
        if self._transaction is not None:
            raise TransactionMisuseError(f"{self.name} already has an active transaction")
        if self.session.in_transaction() and (self._flushed_changes or self.pending_count()):
            raise TransactionMisuseError(f"{self.name} has unsaved changes outside a transaction")
        try:
            if self.session.in_transaction():
                # implicit transaction opened by a read, nothing to keep
                self.session.commit()
            self._transaction = self.session.begin()
        except SQLAlchemyError as e:
            logger.error(f"Beginning transaction on {self.name} failed: {e}")
            raise StorageFailureError(f"Begin failed: {e}", operation="begin") from e
        logger.debug(f"Transaction begun on {self.name}")
        return self._transaction

    def commit_transaction(self) -> int:
        """Commit the explicit transaction; on failure it is left for the caller to roll back."""
        if self._transaction is None:
            raise TransactionMisuseError(f"No active transaction on {self.name} to commit")
        try:
            self.session.flush()
            changes = self._flushed_changes
            self._transaction.commit()
        except SQLAlchemyError as e:
            logger.error(f"Committing transaction on {self.name} failed: {e}")
            raise StorageFailureError(f"Commit failed: {e}", operation="commit") from e
        self._transaction = None
        self._flushed_changes = 0
        return changes

    def rollback_transaction(self):
        if self._transaction is None:
            raise TransactionMisuseError(f"No active transaction on {self.name} to roll back")
        transaction, self._transaction = self._transaction, None
        self._flushed_changes = 0
        try:
            if transaction.is_active:
                transaction.rollback()
            else:
                self.session.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rolling back transaction on {self.name} failed: {e}")
            raise StorageFailureError(f"Rollback failed: {e}", operation="rollback") from e

    # lifecycle

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self):
        if self._disposed:
            return
        try:
            if self._transaction is not None:
                self.rollback_transaction()
        finally:
            self._disposed = True
            try:
                self.session.close()
            except SQLAlchemyError as e:
                logger.error(f"Closing session of {self.name} failed: {e}")
                raise StorageFailureError(f"Dispose failed: {e}", operation="dispose") from e
            logger.debug(f"Disposed {self.name}")

    # helpers

    def _ensure_open(self):
        if self._disposed:
            raise TransactionMisuseError(f"{self.name} has been disposed")

    def _discard(self):
        self._transaction = None
        self._flushed_changes = 0
        self.session.rollback()

    def _attach(self, entity):
        """Return the instance tracked by this session for ``entity``."""
        state = inspect(entity)
        if state.session is self.session:
            return entity
        if state.session is None and (
            state.key is None or state.key not in self.session.identity_map
        ):
            self.session.add(entity)
            return entity
        return self.session.merge(entity)

    @staticmethod
    def _first_data_column(entity_type: Type) -> Optional[str]:
        for attribute in inspect(entity_type).column_attrs:
            if not any(column.primary_key for column in attribute.columns):
                return attribute.key
        return None

    def _count_flushed_changes(self, session, flush_context):
        self._flushed_changes += self.pending_count()

    def __repr__(self):
        state = "disposed" if self._disposed else "open"
        return f"<{self.name} {state}>"
