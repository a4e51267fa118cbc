"""
Unit tests for the SQLAlchemy persistence context's transaction and
disposal handling.
"""

import pytest
from sqlalchemy.exc import OperationalError

from datalayer.adapters.repository import SqlAlchemyRepository
from datalayer.domain.exceptions import StorageFailureError, TransactionMisuseError
from datalayer.service_layer.unit_of_work import TransactionalUnitOfWork, TransactionState
from sample_domain import Customer


class TestBeginTransaction:
    def test_begin_after_a_read(self, sales_context, registry, seed_customers, stored_customer_names):
        (customer_id,) = seed_customers("Ada")
        assert SqlAlchemyRepository(sales_context, Customer).get(customer_id).name == "Ada"

        uow = TransactionalUnitOfWork(sales_context, registry=registry)
        uow.begin()
        uow.repository(Customer).add(Customer(name="Grace"))
        uow.commit()

        assert uow.outcome is TransactionState.COMMITTED
        assert stored_customer_names() == ["Ada", "Grace"]

    def test_begin_with_flushed_changes_rejected(self, sales_context):
        customers = SqlAlchemyRepository(sales_context, Customer)
        customers.add(Customer(name="Ada"))
        # counting autoflushes the staged insert
        customers.find().count()

        with pytest.raises(TransactionMisuseError):
            sales_context.begin_transaction()

    def test_second_explicit_transaction_rejected(self, sales_context):
        sales_context.begin_transaction()

        with pytest.raises(TransactionMisuseError):
            sales_context.begin_transaction()

        assert sales_context.in_transaction


class TestDispose:
    def test_close_failure_is_translated(self, sales_context, monkeypatch):
        def close():
            raise OperationalError("close", {}, Exception("connection reset"))

        monkeypatch.setattr(sales_context.session, "close", close)

        with pytest.raises(StorageFailureError) as exc_info:
            sales_context.dispose()

        assert exc_info.value.operation == "dispose"
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert sales_context.disposed

    def test_dispose_rolls_back_open_transaction(self, sales_context, stored_customer_names):
        sales_context.begin_transaction()
        sales_context.add(Customer(name="Ada"))
        sales_context.save_changes()

        sales_context.dispose()
        sales_context.dispose()

        assert sales_context.disposed
        assert stored_customer_names() == []
