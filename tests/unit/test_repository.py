"""
Unit tests for the generic repository: getters, staged setters and removals.

Nothing a repository stages is visible to an independent session until the
context saves its changes.
"""

import pytest
from sqlalchemy import inspect

from datalayer.adapters.repository import SqlAlchemyRepository
from datalayer.domain.exceptions import AmbiguousResultError, NotFoundError
from sample_domain import Customer, Order


@pytest.fixture
def customers(sales_context):
    return SqlAlchemyRepository(sales_context, Customer)


class TestGetters:
    def test_get_returns_entity_by_key(self, customers, seed_customers):
        first_id, second_id = seed_customers("Ada", "Grace")

        assert customers.get(second_id).name == "Grace"

    def test_get_returns_none_for_unknown_key(self, customers, seed_customers):
        seed_customers("Ada")

        assert customers.get(999) is None

    def test_get_with_includes_and_read_only(self, customers, sales_context):
        sales_context.add(Customer(name="Ada", orders=[Order(reference="R-7")]))
        sales_context.save_changes()

        customer = customers.get(1, includes="orders", read_only=True)

        assert inspect(customer).detached
        assert [o.reference for o in customer.orders] == ["R-7"]

    def test_get_all_is_ordered_by_key(self, customers, seed_customers):
        ids = seed_customers("z", "y", "x")

        assert [c.id for c in customers.get_all()] == ids

    def test_find_with_predicate_ordering_and_paging(self, customers, seed_customers):
        seed_customers("Ada", "Alan", "Grace", "Anita", "Barbara")

        page = customers.find(
            predicate=lambda c: c.name.like("A%"),
            order_by=Customer.name.desc(),
            skip=1,
            top=1,
        )

        assert [c.name for c in page] == ["Alan"]

    def test_find_without_arguments_matches_all(self, customers, seed_customers):
        seed_customers("a", "b")

        assert customers.find().count() == 2

    def test_find_is_lazy(self, customers, seed_customers):
        query = customers.find(lambda c: c.name == "late")
        seed_customers("late")

        assert [c.name for c in query] == ["late"]


class TestSetters:
    def test_add_is_not_persisted_until_saved(self, customers, sales_context, stored_customer_names):
        customers.add(Customer(name="Ada"))

        assert stored_customer_names() == []
        sales_context.save_changes()
        assert stored_customer_names() == ["Ada"]

    def test_add_range(self, customers, sales_context, stored_customer_names):
        added = customers.add_range(Customer(name=n) for n in ("b", "a"))

        assert len(added) == 2
        assert sales_context.save_changes() == 2
        assert stored_customer_names() == ["a", "b"]

    def test_update_tracked_entity(self, customers, sales_context, seed_customers, stored_customer_names):
        (customer_id,) = seed_customers("Ada")
        customer = customers.get(customer_id)
        customer.name = "Ada Lovelace"

        customers.update(customer)
        sales_context.save_changes()

        assert stored_customer_names() == ["Ada Lovelace"]

    def test_update_detached_entity(self, customers, sales_context, seed_customers, stored_customer_names):
        (customer_id,) = seed_customers("Ada")
        customer = customers.get(customer_id, read_only=True)
        customer.name = "Countess"

        tracked = customers.update(customer)
        sales_context.save_changes()

        assert tracked in sales_context.session
        assert stored_customer_names() == ["Countess"]

    def test_update_without_changes_still_counts_as_modified(self, customers, sales_context, seed_customers):
        (customer_id,) = seed_customers("Ada")

        customers.update(customers.get(customer_id))

        assert sales_context.pending_count() == 1
        assert sales_context.save_changes() == 1

    def test_update_range(self, customers, sales_context, seed_customers, stored_customer_names):
        seed_customers("a", "b")
        everyone = customers.get_all().all()
        for customer in everyone:
            customer.name = customer.name.upper()

        customers.update_range(everyone)
        sales_context.save_changes()

        assert stored_customer_names() == ["A", "B"]


class TestRemovals:
    def test_remove_entity(self, customers, sales_context, seed_customers, stored_customer_names):
        first_id, _ = seed_customers("a", "b")

        customers.remove(customers.get(first_id))

        assert stored_customer_names() == ["a", "b"]
        sales_context.save_changes()
        assert stored_customer_names() == ["b"]

    def test_remove_by_key(self, customers, sales_context, seed_customers, stored_customer_names):
        _, second_id = seed_customers("a", "b")

        customers.remove(second_id)
        sales_context.save_changes()

        assert stored_customer_names() == ["a"]

    def test_remove_unknown_key_raises(self, customers, seed_customers):
        seed_customers("a")

        with pytest.raises(NotFoundError) as exc_info:
            customers.remove(42)

        assert exc_info.value.key == 42
        assert exc_info.value.operation == "remove"

    def test_remove_range_mixes_entities_and_keys(self, customers, sales_context, seed_customers, stored_customer_names):
        a_id, b_id, c_id, _ = seed_customers("a", "b", "c", "d")

        removed = customers.remove_range([customers.get(a_id), c_id, 404])
        sales_context.save_changes()

        assert len(removed) == 2
        assert stored_customer_names() == ["b", "d"]

    def test_remove_of_unsaved_entity_unstages_it(self, customers, sales_context, stored_customer_names):
        customer = customers.add(Customer(name="ghost"))

        customers.remove(customer)
        sales_context.save_changes()

        assert stored_customer_names() == []


class TestAmbiguousKeys:
    def test_get_raises_when_key_is_not_unique(self, sales_context):
        class EverythingMatches(SqlAlchemyRepository):
            def _get(self, key, includes, read_only):
                return self.find(includes=includes, read_only=read_only).single_or_none()

        sales_context.add(Customer(name="a"))
        sales_context.add(Customer(name="b"))
        sales_context.save_changes()

        with pytest.raises(AmbiguousResultError):
            EverythingMatches(sales_context, Customer).get(1)


def test_remove_range_of_keys_removes_only_stored_ones(customers, sales_context, seed_customers):
    seed_customers("one", "two", "three")

    removed = customers.remove_range([2, 3, 4])
    sales_context.save_changes()

    assert sorted(c.id for c in removed) == [2, 3]
    assert [c.id for c in customers.get_all()] == [1]
