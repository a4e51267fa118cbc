# pylint: disable=redefined-outer-name
import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import clear_mappers, sessionmaker

from datalayer.adapters import orm
from sample_domain import (
    AuditContext,
    Customer,
    SalesContext,
    audit_metadata,
    build_registry,
    start_mappers,
)


def _sqlite_engine(path):
    return create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})


@pytest.fixture
def mappers():
    start_mappers()
    yield
    clear_mappers()


@pytest.fixture
def sqlite_session_factory(tmp_path, mappers):
    """File backed SQLite database holding the sales tables."""
    engine = _sqlite_engine(tmp_path / "sales.db")
    orm.metadata.create_all(engine)

    yield sessionmaker(bind=engine)

    engine.dispose()


@pytest.fixture
def audit_session_factory(tmp_path, mappers):
    """Second logical database for multi-context tests."""
    engine = _sqlite_engine(tmp_path / "audit.db")
    audit_metadata.create_all(engine)

    yield sessionmaker(bind=engine)

    engine.dispose()


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def sales_context(sqlite_session_factory):
    context = SalesContext(sqlite_session_factory)
    yield context
    context.dispose()


@pytest.fixture
def audit_context(audit_session_factory):
    context = AuditContext(audit_session_factory)
    yield context
    context.dispose()


@pytest.fixture
def seed_customers(sqlite_session_factory):
    """Persist customers directly and return their ids in insertion order."""

    def seed(*names):
        with sqlite_session_factory() as session:
            new_customers = [Customer(name=name) for name in names]
            session.add_all(new_customers)
            session.commit()
            return [customer.id for customer in new_customers]

    return seed


@pytest.fixture
def stored_customer_names(sqlite_session_factory):
    """Read committed customer names through an independent session."""

    def read():
        with sqlite_session_factory() as session:
            return sorted(session.scalars(select(Customer.name)).all())

    return read
