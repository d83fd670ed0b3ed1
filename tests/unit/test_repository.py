"""
Unit tests for entity repositories.

Tests cover:
- add/update/remove with persist and enqueue hooks
- Validation before mutation
- Protected category
- Idempotent remote changes
- Sale completion and stock decrement
"""

import pytest

from possync.apply.repository import (
    CategoryRepository,
    MemberRepository,
    ProductRepository,
    SaleRepository,
)
from possync.errors import ProtectedRecordError, ValidationError
from possync.models import ALL_ITEMS_CATEGORY_ID, IdGenerator, Origin, Record, default_categories
from possync.remote.base import ChangeType, WriteOpKind


class Recorder:
    """Collects persist calls and enqueued ops."""

    def __init__(self):
        self.persists = 0
        self.ops = []
        self.pending = set()

    def persist(self):
        self.persists += 1

    def enqueue(self, op):
        self.ops.append(op)

    def is_pending(self, collection, doc_id):
        return (collection, doc_id) in self.pending

    def hooks(self):
        return {"persist": self.persist, "enqueue": self.enqueue, "is_pending": self.is_pending}


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def ids():
    return IdGenerator()


@pytest.fixture
def products(ids, recorder):
    return ProductRepository(ids, **recorder.hooks())


@pytest.fixture
def members(ids, recorder):
    return MemberRepository(ids, **recorder.hooks())


@pytest.fixture
def sales(ids, products, members, recorder):
    return SaleRepository(ids, products, members, **recorder.hooks())


@pytest.fixture
def categories(ids, recorder):
    repo = CategoryRepository(ids, **recorder.hooks())
    repo.load(default_categories())
    return repo


class TestEntityRepository:
    """Tests for local mutations."""

    def test_add_assigns_id_persists_and_enqueues(self, products, recorder):
        record = products.add({"name": "Latte", "price": 60, "stock": 10})

        assert products.get(record.id) is record
        assert record.last_updated > 0
        assert recorder.persists == 1
        assert [op.kind for op in recorder.ops] == [WriteOpKind.SET]
        assert recorder.ops[0].doc_id == str(record.id)
        assert recorder.ops[0].fields["name"] == "Latte"

    def test_add_ignores_caller_supplied_id(self, products):
        record = products.add({"id": 5, "name": "Latte", "price": 60})

        assert record.id != 5
        assert "id" not in record.fields

    def test_add_never_reuses_ids(self, products):
        created = [products.add({"name": f"P{i}", "price": i}) for i in range(50)]

        assert len({r.id for r in created}) == 50

    def test_invalid_add_changes_nothing(self, products, recorder):
        with pytest.raises(ValidationError) as exc_info:
            products.add({"name": "No price"})

        assert exc_info.value.collection == "products"
        assert len(products) == 0
        assert recorder.persists == 0
        assert recorder.ops == []

    def test_update_merges_whitelisted_fields(self, products, recorder):
        record = products.add({"name": "Latte", "price": 60})
        before = record.last_updated

        assert products.update(record.id, {"price": 65, "secret": True}) is True

        assert record.fields["price"] == 65
        assert "secret" not in record.fields
        assert record.last_updated >= before
        assert recorder.ops[-1].kind is WriteOpKind.UPDATE

    def test_update_unknown_returns_false(self, products, recorder):
        assert products.update(123, {"price": 1}) is False
        assert recorder.ops == []

    def test_invalid_update_changes_nothing(self, products):
        record = products.add({"name": "Latte", "price": 60, "stock": 3})

        with pytest.raises(ValidationError):
            products.update(record.id, {"stock": -5})

        assert record.fields["stock"] == 3

    def test_remove(self, products, recorder):
        record = products.add({"name": "Latte", "price": 60})

        assert products.remove(record.id) is True

        assert products.get(record.id) is None
        assert recorder.ops[-1].kind is WriteOpKind.DELETE

    def test_remove_unknown_returns_false(self, products):
        assert products.remove(999) is False

    def test_enqueue_failure_does_not_roll_back(self, ids, recorder):
        def broken_enqueue(op):
            raise RuntimeError("queue is gone")

        repo = ProductRepository(ids, persist=recorder.persist, enqueue=broken_enqueue)

        record = repo.add({"name": "Latte", "price": 60})

        assert repo.get(record.id) is not None
        assert recorder.persists == 1

    def test_envelope_reports_origin_and_pending(self, products, recorder):
        record = products.add({"name": "Latte", "price": 60})
        recorder.pending.add(("products", str(record.id)))

        envelope = products.envelope(record.id)

        assert envelope.origin is Origin.LOCAL
        assert envelope.pending_write is True
        assert products.pending_ids() == {record.id}

    def test_get_with_non_numeric_id(self, products):
        assert products.get("abc") is None


class TestCategoryRepository:
    """Tests for the protected category."""

    def test_remove_protected_raises_and_changes_nothing(self, categories, recorder):
        before = len(categories)

        with pytest.raises(ProtectedRecordError):
            categories.remove(ALL_ITEMS_CATEGORY_ID)

        assert len(categories) == before
        assert categories.get(ALL_ITEMS_CATEGORY_ID) is not None
        assert recorder.ops == []
        assert recorder.persists == 0

    def test_remote_removed_never_deletes_protected(self, categories):
        record = Record(id=ALL_ITEMS_CATEGORY_ID, fields={}, last_updated=1)

        assert categories.apply_remote_change(ChangeType.REMOVED, record) is False
        assert categories.get(ALL_ITEMS_CATEGORY_ID) is not None

    def test_replace_all_synthesizes_protected(self, categories):
        categories.replace_all([Record(id=7, fields={"name": "Tea"}, last_updated=1)])

        assert set(r.id for r in categories.all()) == {ALL_ITEMS_CATEGORY_ID, 7}

    def test_ensure_protected_is_idempotent(self, categories):
        assert categories.ensure_protected() is False


class TestApplyRemoteChange:
    """Tests for idempotent remote merges."""

    def test_added_inserts_when_absent(self, products):
        record = Record(id=1, fields={"name": "Remote"}, last_updated=5)

        assert products.apply_remote_change(ChangeType.ADDED, record) is True
        assert products.envelope(1).origin is Origin.REMOTE

    def test_added_keeps_local_copy(self, products):
        local = products.add({"name": "Local", "price": 1})
        remote = Record(id=local.id, fields={"name": "Remote", "price": 2}, last_updated=1)

        assert products.apply_remote_change(ChangeType.ADDED, remote) is False
        assert products.get(local.id).fields["name"] == "Local"

    def test_modified_overwrites_and_is_idempotent(self, products):
        products.apply_remote_change(
            ChangeType.ADDED, Record(id=1, fields={"name": "A", "stock": 1}, last_updated=1)
        )
        change = Record(id=1, fields={"name": "B", "stock": 9}, last_updated=2)

        assert products.apply_remote_change(ChangeType.MODIFIED, change) is True
        snapshot = products.get(1).fields.copy()
        again = Record(id=1, fields={"name": "B", "stock": 9}, last_updated=2)
        assert products.apply_remote_change(ChangeType.MODIFIED, again) is False

        assert products.get(1).fields == snapshot == {"name": "B", "stock": 9}

    def test_modified_inserts_when_absent(self, products):
        record = Record(id=3, fields={"name": "New"}, last_updated=1)

        assert products.apply_remote_change(ChangeType.MODIFIED, record) is True
        assert products.get(3) is not None

    def test_removed_unknown_is_noop(self, products):
        products.add({"name": "Keep", "price": 1})
        before = [r.copy() for r in products.all()]

        changed = products.apply_remote_change(
            ChangeType.REMOVED, Record(id=424242, fields={}, last_updated=1)
        )

        assert changed is False
        assert [r.fields for r in products.all()] == [r.fields for r in before]

    def test_remote_changes_do_not_persist_or_enqueue(self, products, recorder):
        products.apply_remote_change(
            ChangeType.ADDED, Record(id=1, fields={"name": "A"}, last_updated=1)
        )

        assert recorder.persists == 0
        assert recorder.ops == []

    def test_replace_all_keeps_pending(self, products, recorder):
        pending = products.add({"name": "Pending", "price": 1})
        recorder.pending.add(("products", str(pending.id)))
        products.apply_remote_change(
            ChangeType.ADDED, Record(id=1, fields={"name": "Old"}, last_updated=1)
        )

        products.replace_all([Record(id=2, fields={"name": "Fresh"}, last_updated=1)])

        assert {r.id for r in products.all()} == {pending.id, 2}

    def test_prune_missing_skips_pending(self, products, recorder):
        pending = products.add({"name": "Pending", "price": 1})
        recorder.pending.add(("products", str(pending.id)))
        stale = products.add({"name": "Stale", "price": 1})

        removed = products.prune_missing(set())

        assert removed == [stale.id]
        assert products.get(pending.id) is not None


class TestSaleRepository:
    """Tests for sale completion."""

    def test_latte_sale_decrements_stock(self, products, sales, recorder):
        latte = products.add({"name": "Latte", "price": 60, "stock": 10})
        persists_before = recorder.persists

        sale = sales.add(
            {"items": [{"productId": latte.id, "quantity": 2, "price": 60}], "cashierId": "c1"}
        )

        assert products.get(latte.id).fields["stock"] == 8
        assert len(sale.fields["items"]) == 1
        assert sale.fields["total"] == 120
        assert sale.fields["timestamp"] > 0
        assert recorder.persists == persists_before + 1
        assert [(op.collection, op.kind) for op in recorder.ops[-2:]] == [
            ("sales", WriteOpKind.SET),
            ("products", WriteOpKind.UPDATE),
        ]

    def test_sale_without_items_rejected_before_mutation(self, products, sales, recorder):
        latte = products.add({"name": "Latte", "price": 60, "stock": 10})
        ops_before = len(recorder.ops)

        with pytest.raises(ValidationError):
            sales.add({"items": []})

        assert len(sales) == 0
        assert products.get(latte.id).fields["stock"] == 10
        assert len(recorder.ops) == ops_before

    def test_unknown_product_still_records_sale(self, products, sales, caplog):
        sale = sales.add({"items": [{"productId": 999, "quantity": 1, "price": 5}]})

        assert sales.get(sale.id) is not None
        assert "unknown product" in caplog.text

    def test_oversell_clamps_at_zero(self, products, sales):
        latte = products.add({"name": "Latte", "price": 60, "stock": 1})

        sales.add({"items": [{"productId": latte.id, "quantity": 3, "price": 60}]})

        assert products.get(latte.id).fields["stock"] == 0

    def test_remote_stock_written_as_text_is_decremented(self, products, sales):
        latte = products.add({"name": "Latte", "price": 60, "stock": 10})
        mocha = Record(id=7, fields={"name": "Mocha", "stock": "5"}, last_updated=1)
        products.load([*products.all(), mocha])

        sale = sales.add(
            {
                "items": [
                    {"productId": latte.id, "quantity": 2, "price": 60},
                    {"productId": 7, "quantity": 1, "price": 55},
                ]
            }
        )

        assert sales.get(sale.id) is not None
        assert products.get(latte.id).fields["stock"] == 8
        assert products.get(7).fields["stock"] == 4

    def test_unreadable_stock_counts_as_zero(self, products, sales, caplog):
        products.load([Record(id=7, fields={"name": "Mocha", "stock": "plenty"}, last_updated=1)])

        sale = sales.add({"items": [{"productId": 7, "quantity": 1, "price": 55}]})

        assert sales.get(sale.id) is not None
        assert products.get(7).fields["stock"] == 0
        assert "non-numeric stock" in caplog.text

    def test_same_product_on_two_lines_decrements_once(self, products, sales, recorder):
        latte = products.add({"name": "Latte", "price": 60, "stock": 10})

        sales.add(
            {
                "items": [
                    {"productId": latte.id, "quantity": 2, "price": 60},
                    {"productId": latte.id, "quantity": 3, "price": 60},
                ]
            }
        )

        assert products.get(latte.id).fields["stock"] == 5
        assert [op.collection for op in recorder.ops[-2:]] == ["sales", "products"]

    def test_member_name_enrichment(self, members, sales):
        member = members.add({"name": "Somchai", "phone": "0812345678"})

        sale = sales.add(
            {"items": [{"productId": 1, "quantity": 1, "price": 5}], "memberId": member.id}
        )

        assert sale.fields["memberName"] == "Somchai"

    def test_sales_between_and_recent(self, sales):
        for ts in (1000, 2000, 3000):
            sales.add({"items": [{"productId": 1, "quantity": 1}], "timestamp": ts})

        assert [r.fields["timestamp"] for r in sales.recent()] == [3000, 2000, 1000]
        assert [r.fields["timestamp"] for r in sales.sales_between(1500, 3000)] == [2000]
        assert len(sales.recent(limit=1)) == 1

    def test_today(self, sales):
        sales.add({"items": [{"productId": 1, "quantity": 1}]})
        sales.add({"items": [{"productId": 1, "quantity": 1}], "timestamp": 1000})

        assert len(sales.today()) == 1
