from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock, patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from core.apps import get_settings_cache
from core.models import AuditLog, Store
from inventory.documents import DocumentLine, DocumentType
from inventory.exceptions import (
    ConcurrencyConflictError,
    CrossStoreError,
    DocumentStateError,
    InsufficientStockError,
    ValidationError,
)
from inventory.ledger import StockLedger, run_with_conflict_retry
from inventory.models import (
    Dispatch,
    GoodsReceivedNote,
    Item,
    PurchaseReturn,
    StockAdjustment,
    StockMovement,
    StoreItemStock,
    Supplier,
)
from inventory.policies import (
    cancel_document,
    post_adjustment,
    post_dispatch,
    post_grn,
    post_opening_stock,
    post_purchase_return,
)
from inventory.pricing import Absolute, Percent, TaxMethod, price_line, summarize
from inventory.status import StockStatus, build_stock_report, classify

TransactionType = StockMovement.TransactionType


def opening(item, quantity, unit_price=None):
    return DocumentLine(DocumentType.OPENING_STOCK, item.id, Decimal(quantity), unit_price=unit_price)


def grn_line(item, quantity, unit_price, **kwargs):
    return DocumentLine(DocumentType.GRN, item.id, Decimal(quantity), unit_price=Decimal(unit_price), **kwargs)


def adjustment(item, quantity, reason_code="damaged"):
    return DocumentLine(DocumentType.ADJUSTMENT, item.id, Decimal(quantity), reason_code=reason_code)


def dispatch_line(item, quantity):
    return DocumentLine(DocumentType.DISPATCH, item.id, Decimal(quantity))


class StockFixtureMixin:
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.ledger = StockLedger(allow_negative=False)

        self.store_a = Store.objects.create(code="A", name="Store A")
        self.store_b = Store.objects.create(code="B", name="Store B")
        self.supplier = Supplier.objects.create(code="SUP-1", name="Supplier One")
        self.item = Item.objects.create(
            code="ITM-1",
            name="Widget",
            cost_price=Decimal("4.00"),
            retail_price=Decimal("7.00"),
            wholesale_price=Decimal("6.00"),
            reorder_level=10,
        )
        self.other_item = Item.objects.create(
            code="ITM-2",
            name="Gadget",
            cost_price=Decimal("2.00"),
            retail_price=Decimal("3.00"),
            reorder_level=5,
        )

        self.admin = self.user_model.objects.create_user(
            username="admin",
            password="pass1234",
            role=self.user_model.Role.ADMIN,
            store=self.store_a,
        )
        self.supervisor = self.user_model.objects.create_user(
            username="supervisor",
            password="pass1234",
            role=self.user_model.Role.SUPERVISOR,
            store=self.store_a,
        )
        self.cashier = self.user_model.objects.create_user(
            username="cashier",
            password="pass1234",
            role=self.user_model.Role.CASHIER,
            store=self.store_a,
        )

    def stock(self, item, store):
        return self.ledger.get_projection(item.id, store.id).quantity_on_hand

    def receive(self, item, store, quantity, unit_price="4.00"):
        return post_grn(
            store,
            [grn_line(item, quantity, unit_price)],
            supplier=self.supplier,
            user=self.admin,
            ledger=self.ledger,
        )


class PricingTests(SimpleTestCase):
    def test_exclusive_tax_is_added_after_discount(self):
        price = price_line(3, 100, Percent(Decimal("10")), TaxMethod.EXCLUSIVE, 15)

        self.assertEqual(price.gross, Decimal("300"))
        self.assertEqual(price.discount_value, Decimal("30"))
        self.assertEqual(price.after_discount, Decimal("270"))
        self.assertEqual(price.tax_value, Decimal("40.5"))
        self.assertEqual(price.net_value, Decimal("310.5"))

    def test_inclusive_tax_is_reported_but_not_added(self):
        price = price_line(3, 100, Percent(Decimal("10")), TaxMethod.INCLUSIVE, 15).rounded()

        self.assertEqual(price.tax_value, Decimal("35.22"))
        self.assertEqual(price.net_value, Decimal("270.00"))

    def test_no_tax_method_ignores_rate(self):
        price = price_line(2, "12.50", None, TaxMethod.NONE, 15)

        self.assertEqual(price.tax_value, Decimal("0"))
        self.assertEqual(price.net_value, Decimal("25.00"))

    def test_absolute_discount_is_used_verbatim(self):
        price = price_line(3, 100, Absolute(Decimal("25")), TaxMethod.NONE, 0)

        self.assertEqual(price.discount_value, Decimal("25"))
        self.assertEqual(price.net_value, Decimal("275"))

    def test_inclusive_tax_matches_exclusive_tax_on_the_net_base(self):
        inclusive = price_line(1, 115, None, TaxMethod.INCLUSIVE, 15)
        exclusive = price_line(1, 100, None, TaxMethod.EXCLUSIVE, 15)

        self.assertEqual(inclusive.tax_value, exclusive.tax_value)

    def test_pricing_is_deterministic(self):
        first = price_line("1.5", "3.33", Percent(Decimal("7.5")), TaxMethod.EXCLUSIVE, "14")
        second = price_line("1.5", "3.33", Percent(Decimal("7.5")), TaxMethod.EXCLUSIVE, "14")

        self.assertEqual(first, second)

    def test_document_total_is_the_sum_of_rounded_line_nets(self):
        prices = [
            price_line("1", "0.333", None, TaxMethod.EXCLUSIVE, 15).rounded(),
            price_line("2", "0.333", None, TaxMethod.EXCLUSIVE, 15).rounded(),
            price_line("3", "0.333", None, TaxMethod.EXCLUSIVE, 15).rounded(),
        ]

        totals = summarize(prices)

        self.assertEqual(totals.total, sum(price.net_value for price in prices))
        self.assertEqual(totals.total, Decimal("2.30"))

    def test_rejects_out_of_range_inputs(self):
        invalid_calls = [
            ((0, 10), {}),
            ((-1, 10), {}),
            ((1, -1), {}),
            ((1, 10), {"discount": Percent(Decimal("101"))}),
            ((1, 10), {"discount": Percent(Decimal("-1"))}),
            ((1, 10), {"discount": Absolute(Decimal("11"))}),
            ((1, 10), {"tax_method": TaxMethod.EXCLUSIVE, "tax_rate": 101}),
            ((1, 10), {"tax_method": "vat"}),
            (("abc", 10), {}),
        ]
        for args, kwargs in invalid_calls:
            with self.subTest(args=args, kwargs=kwargs):
                with self.assertRaises(ValidationError):
                    price_line(*args, **kwargs)

    def test_validation_error_carries_offending_value(self):
        with self.assertRaises(ValidationError) as ctx:
            price_line(1, 10, Percent(Decimal("120")))

        self.assertEqual(ctx.exception.context, {"discount_percent": "120"})


class DocumentLineTests(SimpleTestCase):
    def test_adjustment_requires_reason_and_non_zero_quantity(self):
        item_id = "6b0c2a4e-5d5f-4a43-9a55-5a0f3b7f2c11"

        with self.assertRaises(ValidationError):
            DocumentLine(DocumentType.ADJUSTMENT, item_id, Decimal("-1"))
        with self.assertRaises(ValidationError):
            DocumentLine(DocumentType.ADJUSTMENT, item_id, Decimal("0"), reason_code="damaged")

        line = DocumentLine(DocumentType.ADJUSTMENT, item_id, Decimal("-1"), reason_code="damaged")
        self.assertEqual(str(line.item_id), item_id)

    def test_outward_lines_reject_non_positive_quantity(self):
        with self.assertRaises(ValidationError):
            DocumentLine(DocumentType.RETAIL_SALE, "6b0c2a4e-5d5f-4a43-9a55-5a0f3b7f2c11", Decimal("-2"))

    def test_return_lines_need_a_source_line(self):
        with self.assertRaises(ValidationError):
            DocumentLine(DocumentType.SALES_RETURN, "6b0c2a4e-5d5f-4a43-9a55-5a0f3b7f2c11", Decimal("1"))

    def test_quantity_is_rounded_to_three_places(self):
        item_id = "6b0c2a4e-5d5f-4a43-9a55-5a0f3b7f2c11"

        line = DocumentLine(DocumentType.GRN, item_id, Decimal("1.0005"), unit_price=Decimal("10"))

        self.assertEqual(str(line.quantity), "1.001")
        with self.assertRaises(ValidationError):
            DocumentLine(DocumentType.RETAIL_SALE, item_id, Decimal("0.0004"))

    def test_only_inward_lines_carry_selling_prices(self):
        with self.assertRaises(ValidationError):
            DocumentLine(
                DocumentType.RETAIL_SALE,
                "6b0c2a4e-5d5f-4a43-9a55-5a0f3b7f2c11",
                Decimal("1"),
                retail_price=Decimal("9.00"),
            )


class StockStatusTests(SimpleTestCase):
    def test_classify_boundaries(self):
        cases = [
            (Decimal("-1"), 10, StockStatus.OUT_OF_STOCK),
            (Decimal("0"), 10, StockStatus.OUT_OF_STOCK),
            (Decimal("0.5"), 10, StockStatus.CRITICAL),
            (Decimal("5"), 10, StockStatus.CRITICAL),
            (Decimal("5.001"), 10, StockStatus.LOW),
            (Decimal("10"), 10, StockStatus.LOW),
            (Decimal("10.001"), 10, StockStatus.OK),
            (Decimal("1"), 0, StockStatus.OK),
        ]
        for on_hand, reorder_level, expected in cases:
            with self.subTest(on_hand=on_hand, reorder_level=reorder_level):
                self.assertEqual(classify(on_hand, reorder_level), expected)

    def test_critical_ratio_is_configurable(self):
        self.assertEqual(classify(Decimal("5"), 10, ratio="0.25"), StockStatus.LOW)
        with override_settings(STOCK_CRITICAL_RATIO=Decimal("0.75")):
            self.assertEqual(classify(Decimal("7"), 10), StockStatus.CRITICAL)


class StockLedgerTests(StockFixtureMixin, TestCase):
    def test_movements_keep_running_balance_and_projection_in_step(self):
        first = self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.GRN, 10)
        second = self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.SALE, -4)

        self.assertEqual(first.running_balance, Decimal("10"))
        self.assertEqual(second.running_balance, Decimal("6"))
        self.assertEqual(second.sequence, first.sequence + 1)

        projection = self.ledger.get_projection(self.item.id, self.store_a.id)
        self.assertEqual(projection.quantity_on_hand, Decimal("6"))
        self.assertEqual(projection.version, second.sequence)
        self.assertEqual(self.ledger.replay(self.item.id, self.store_a.id), Decimal("6"))
        self.assertEqual(list(self.ledger.verify()), [])

    def test_projection_of_untouched_item_is_zero(self):
        projection = self.ledger.get_projection(self.item.id, self.store_b.id)

        self.assertEqual(projection.quantity_on_hand, 0)
        self.assertFalse(StoreItemStock.objects.filter(item=self.item, store=self.store_b).exists())

    def test_insufficient_stock_persists_nothing(self):
        self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.GRN, 5)

        with self.assertRaises(InsufficientStockError) as ctx:
            self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.SALE, -7)

        self.assertEqual(ctx.exception.context["requested"], "7.000")
        self.assertEqual(ctx.exception.context["available"], "5.000")
        self.assertEqual(StockMovement.objects.filter(item=self.item).count(), 1)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("5"))

    def test_negative_stock_allowed_when_configured(self):
        ledger = StockLedger(allow_negative=True)

        movement = ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.ADJUSTMENT_OUT, -3)

        self.assertEqual(movement.running_balance, Decimal("-3"))

    def test_outward_movement_respects_reservations(self):
        self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.GRN, 5)
        self.ledger.reserve(self.item.id, self.store_a.id, 4)

        with self.assertRaises(InsufficientStockError):
            self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.SALE, -2)

        self.ledger.release(self.item.id, self.store_a.id, 4)
        self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.SALE, -2)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("3"))

    def test_reverse_movement_appends_compensating_entry(self):
        self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.GRN, 10)
        sale = self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.SALE, -4)

        reversal = self.ledger.reverse_movement(sale.id, created_by=self.supervisor)

        self.assertEqual(reversal.transaction_type, TransactionType.SALE_REVERSAL)
        self.assertEqual(reversal.quantity, Decimal("4"))
        self.assertEqual(reversal.reverses_id, sale.id)
        self.assertEqual(reversal.running_balance, Decimal("10"))
        sale.refresh_from_db()
        self.assertEqual(sale.quantity, Decimal("-4"))

        with self.assertRaises(DocumentStateError):
            self.ledger.reverse_movement(sale.id)
        with self.assertRaises(DocumentStateError):
            self.ledger.reverse_movement(reversal.id)

    def test_movements_are_append_only(self):
        movement = self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.GRN, 1)

        with self.assertRaises(ValueError):
            movement.save()
        with self.assertRaises(ValueError):
            movement.delete()

    def test_history_is_ordered_and_filterable(self):
        self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.GRN, 10)
        self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.SALE, -1)
        self.ledger.apply_movement(self.item.id, self.store_b.id, TransactionType.GRN, 3)

        history = list(self.ledger.get_history(self.item.id, self.store_a.id))

        self.assertEqual([movement.quantity for movement in history], [Decimal("10"), Decimal("-1")])
        future = timezone.now() + timedelta(days=1)
        self.assertEqual(list(self.ledger.get_history(self.item.id, self.store_a.id, since=future)), [])

    def test_verify_reports_divergent_projection(self):
        self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.GRN, 10)
        StoreItemStock.objects.filter(item=self.item, store=self.store_a).update(quantity_on_hand=Decimal("12"))

        divergences = list(self.ledger.verify())

        self.assertEqual(len(divergences), 1)
        self.assertEqual(divergences[0].replayed_quantity, Decimal("10"))
        self.assertEqual(divergences[0].quantity_on_hand, Decimal("12"))

    def test_allow_negative_falls_back_to_runtime_setting(self):
        cache = get_settings_cache()
        self.addCleanup(cache.invalidate)
        cache.save("allow_negative_stock", "true", value_type="boolean")

        self.assertTrue(StockLedger(settings_cache=cache).allows_negative_stock())
        self.assertFalse(StockLedger(settings_cache=cache, allow_negative=False).allows_negative_stock())


class ConflictRetryTests(StockFixtureMixin, TestCase):
    def test_conflict_is_retried_once_then_surfaced(self):
        fn = Mock(side_effect=ConcurrencyConflictError())

        with self.assertRaises(ConcurrencyConflictError):
            run_with_conflict_retry(fn, retries=1)

        self.assertEqual(fn.call_count, 2)

    def test_business_errors_are_not_retried(self):
        fn = Mock(side_effect=InsufficientStockError())

        with self.assertRaises(InsufficientStockError):
            run_with_conflict_retry(fn, retries=2)

        self.assertEqual(fn.call_count, 1)

    def test_posting_retries_whole_document_after_lost_race(self):
        self.receive(self.item, self.store_a, 10)
        real_update = StockLedger._conditional_update
        calls = []

        def flaky_update(ledger, projection, **changes):
            calls.append(projection.pk)
            if len(calls) == 1:
                raise ConcurrencyConflictError(item_id=projection.item_id, store_id=projection.store_id)
            return real_update(ledger, projection, **changes)

        with patch.object(StockLedger, "_conditional_update", autospec=True, side_effect=flaky_update):
            result = post_adjustment(
                self.store_a,
                [adjustment(self.item, "-2")],
                user=self.supervisor,
                ledger=self.ledger,
            )

        self.assertEqual(len(calls), 2)
        self.assertEqual(StockAdjustment.objects.count(), 1)
        self.assertEqual(result.document.movements().count(), 1)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("8"))


class InwardPostingTests(StockFixtureMixin, TestCase):
    def test_opening_stock_posts_inward_movements(self):
        result = post_opening_stock(
            self.store_a,
            [opening(self.item, 20, Decimal("5.00")), opening(self.other_item, 3)],
            user=self.admin,
            ledger=self.ledger,
        )

        document = result.document
        self.assertTrue(document.number.startswith("A-OPSTK-"))
        self.assertEqual(document.total, Decimal("106.00"))
        self.assertEqual({movement.transaction_type for movement in result.movements}, {TransactionType.OPENING_STOCK})
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("20"))
        self.item.refresh_from_db()
        self.assertEqual(self.item.cost_price, Decimal("4.00"))

    def test_opening_stock_rejects_duplicate_items(self):
        with self.assertRaises(ValidationError):
            post_opening_stock(
                self.store_a,
                [opening(self.item, 1), opening(self.item, 2)],
                ledger=self.ledger,
            )

    def test_grn_updates_cost_and_prices_only_when_requested(self):
        post_grn(
            self.store_a,
            [grn_line(self.item, 10, "5.00")],
            supplier=self.supplier,
            ledger=self.ledger,
        )
        self.item.refresh_from_db()
        self.assertEqual(self.item.cost_price, Decimal("4.00"))

        post_grn(
            self.store_a,
            [grn_line(self.item, 10, "6.00", retail_price=Decimal("9.50"))],
            supplier=self.supplier,
            update_cost_price=True,
            ledger=self.ledger,
        )
        self.item.refresh_from_db()
        self.assertEqual(self.item.cost_price, Decimal("6.00"))
        self.assertEqual(self.item.retail_price, Decimal("9.50"))
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("20"))

    @override_settings(INVENTORY_WEIGHTED_AVERAGE_COST=True)
    def test_grn_weighted_average_cost(self):
        self.receive(self.item, self.store_a, 10, "4.00")

        post_grn(
            self.store_a,
            [grn_line(self.item, 10, "6.00")],
            supplier=self.supplier,
            update_cost_price=True,
            ledger=self.ledger,
        )

        self.item.refresh_from_db()
        self.assertEqual(self.item.cost_price, Decimal("5.00"))

    @override_settings(INVENTORY_WEIGHTED_AVERAGE_COST=True)
    def test_weighted_average_counts_earlier_lines_of_the_same_item(self):
        self.receive(self.item, self.store_a, 10, "4.00")

        post_grn(
            self.store_a,
            [grn_line(self.item, 10, "6.00"), grn_line(self.item, 10, "8.00")],
            supplier=self.supplier,
            update_cost_price=True,
            ledger=self.ledger,
        )

        self.item.refresh_from_db()
        self.assertEqual(self.item.cost_price, Decimal("6.00"))
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("30"))

    def test_fractional_quantity_matches_across_line_and_movement(self):
        result = post_grn(
            self.store_a,
            [grn_line(self.item, "1.0005", "10.00")],
            supplier=self.supplier,
            ledger=self.ledger,
        )

        line = result.document.lines.get()
        self.assertEqual(line.quantity, Decimal("1.001"))
        self.assertEqual(result.movements[0].quantity, Decimal("1.001"))
        self.assertEqual(line.net_value, Decimal("10.01"))
        self.assertEqual(result.document.total, Decimal("10.01"))

    def test_grn_requires_supplier(self):
        with self.assertRaises(ValidationError):
            post_grn(self.store_a, [grn_line(self.item, 1, "1.00")], supplier=None, ledger=self.ledger)

    def test_document_numbers_are_sequential_per_store(self):
        first = self.receive(self.item, self.store_a, 1).document
        second = self.receive(self.item, self.store_a, 1).document

        self.assertNotEqual(first.number, second.number)
        self.assertTrue(first.number.startswith("A-GRN-"))


class OutwardPostingTests(StockFixtureMixin, TestCase):
    def test_multi_line_document_is_all_or_nothing(self):
        self.receive(self.item, self.store_a, 10)
        self.receive(self.other_item, self.store_a, 1)
        movements_before = StockMovement.objects.count()

        with self.assertRaises(InsufficientStockError) as ctx:
            post_adjustment(
                self.store_a,
                [adjustment(self.item, "-2"), adjustment(self.other_item, "-5")],
                ledger=self.ledger,
            )

        shortages = ctx.exception.context["shortages"]
        self.assertEqual(len(shortages), 1)
        self.assertEqual(shortages[0]["item_id"], str(self.other_item.id))
        self.assertEqual(shortages[0]["requested"], "5.000")
        self.assertEqual(StockMovement.objects.count(), movements_before)
        self.assertFalse(StockAdjustment.objects.exists())
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("10"))

    def test_adjustment_direction_follows_quantity_sign(self):
        self.receive(self.item, self.store_a, 10)

        result = post_adjustment(
            self.store_a,
            [adjustment(self.item, "-3", "damaged"), adjustment(self.other_item, "2", "damaged")],
            user=self.supervisor,
            ledger=self.ledger,
        )

        types = {movement.item_id: movement.transaction_type for movement in result.movements}
        self.assertEqual(types[self.item.id], TransactionType.ADJUSTMENT_OUT)
        self.assertEqual(types[self.other_item.id], TransactionType.ADJUSTMENT_IN)
        line = result.document.lines.get(item=self.item)
        self.assertEqual(line.current_stock, Decimal("10"))
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("7"))

    def test_dispatch_moves_stock_between_stores(self):
        self.receive(self.item, self.store_a, 20)

        result = post_dispatch(self.store_a, self.store_b, [dispatch_line(self.item, 10)], ledger=self.ledger)

        self.assertEqual(
            sorted(movement.transaction_type for movement in result.movements),
            [TransactionType.TRANSFER_IN, TransactionType.TRANSFER_OUT],
        )
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("10"))
        self.assertEqual(self.stock(self.item, self.store_b), Decimal("10"))
        self.assertEqual(result.document.total, Decimal("40.00"))

    def test_dispatch_shortage_leaves_both_stores_unchanged(self):
        self.receive(self.item, self.store_a, 5)

        with self.assertRaises(InsufficientStockError):
            post_dispatch(self.store_a, self.store_b, [dispatch_line(self.item, 10)], ledger=self.ledger)

        self.assertEqual(self.stock(self.item, self.store_a), Decimal("5"))
        self.assertEqual(self.stock(self.item, self.store_b), Decimal("0"))
        self.assertFalse(Dispatch.objects.exists())
        self.assertFalse(
            StockMovement.objects.filter(
                transaction_type__in=[TransactionType.TRANSFER_IN, TransactionType.TRANSFER_OUT]
            ).exists()
        )

    def test_dispatch_to_same_store_is_rejected(self):
        with self.assertRaises(CrossStoreError):
            post_dispatch(self.store_a, self.store_a, [dispatch_line(self.item, 1)], ledger=self.ledger)

    def test_purchase_return_is_limited_to_received_quantity(self):
        grn = self.receive(self.item, self.store_a, 10, "4.50").document
        source = grn.lines.get()

        result = post_purchase_return(
            grn,
            [DocumentLine(DocumentType.PURCHASE_RETURN, self.item.id, Decimal("4"), source_line_id=source.id)],
            reason="Damaged on arrival",
            ledger=self.ledger,
        )

        line = result.document.lines.get()
        self.assertEqual(line.unit_price, Decimal("4.50"))
        self.assertEqual(result.document.total, Decimal("18.00"))
        self.assertEqual(result.movements[0].transaction_type, TransactionType.PURCHASE_RETURN)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("6"))

        with self.assertRaises(ValidationError) as ctx:
            post_purchase_return(
                grn,
                [DocumentLine(DocumentType.PURCHASE_RETURN, self.item.id, Decimal("7"), source_line_id=source.id)],
                ledger=self.ledger,
            )
        self.assertEqual(ctx.exception.context["lines"][0]["returnable"], "6.000")
        self.assertEqual(PurchaseReturn.objects.count(), 1)


class CancellationTests(StockFixtureMixin, TestCase):
    def test_cancel_reverses_every_movement_once(self):
        grn = self.receive(self.item, self.store_a, 10).document

        result = cancel_document(grn, user=self.supervisor, ledger=self.ledger)

        self.assertEqual(result.document.status, GoodsReceivedNote.Status.CANCELLED)
        self.assertIsNotNone(result.document.cancelled_at)
        self.assertEqual([movement.transaction_type for movement in result.movements], [TransactionType.GRN_REVERSAL])
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("0"))
        self.assertEqual(list(self.ledger.verify()), [])

        with self.assertRaises(DocumentStateError):
            cancel_document(result.document, ledger=self.ledger)

    def test_cancel_refused_when_stock_already_consumed(self):
        grn = self.receive(self.item, self.store_a, 10).document
        post_adjustment(self.store_a, [adjustment(self.item, "-8")], ledger=self.ledger)

        with self.assertRaises(InsufficientStockError):
            cancel_document(grn, ledger=self.ledger)

        grn.refresh_from_db()
        self.assertEqual(grn.status, GoodsReceivedNote.Status.POSTED)

    def test_grn_with_posted_returns_cannot_be_cancelled(self):
        grn = self.receive(self.item, self.store_a, 10).document
        post_purchase_return(
            grn,
            [DocumentLine(DocumentType.PURCHASE_RETURN, self.item.id, Decimal("1"), source_line_id=grn.lines.get().id)],
            ledger=self.ledger,
        )

        with self.assertRaises(DocumentStateError):
            cancel_document(grn, ledger=self.ledger)

    def test_cancel_dispatch_restores_both_stores(self):
        self.receive(self.item, self.store_a, 20)
        dispatch = post_dispatch(self.store_a, self.store_b, [dispatch_line(self.item, 10)], ledger=self.ledger).document

        cancel_document(dispatch, ledger=self.ledger)

        self.assertEqual(self.stock(self.item, self.store_a), Decimal("20"))
        self.assertEqual(self.stock(self.item, self.store_b), Decimal("0"))

    def test_posted_document_movement_is_only_reversed_by_cancel(self):
        grn = self.receive(self.item, self.store_a, 10).document

        with self.assertRaises(DocumentStateError) as ctx:
            self.ledger.reverse_movement(grn.movements().get().id)

        self.assertEqual(ctx.exception.context["document_number"], grn.number)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("10"))

        result = cancel_document(grn, ledger=self.ledger)

        self.assertEqual([movement.transaction_type for movement in result.movements], [TransactionType.GRN_REVERSAL])
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("0"))

    def test_dispatch_leg_cannot_be_reversed_alone(self):
        self.receive(self.item, self.store_a, 20)
        dispatch = post_dispatch(self.store_a, self.store_b, [dispatch_line(self.item, 10)], ledger=self.ledger).document
        transfer_out = dispatch.movements().get(transaction_type=TransactionType.TRANSFER_OUT)

        with self.assertRaises(DocumentStateError):
            self.ledger.reverse_movement(transfer_out.id)

        dispatch.refresh_from_db()
        self.assertEqual(dispatch.status, Dispatch.Status.POSTED)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("10"))
        self.assertEqual(self.stock(self.item, self.store_b), Decimal("10"))


class StockReportTests(StockFixtureMixin, TestCase):
    def test_report_classifies_and_values_stock(self):
        self.receive(self.item, self.store_a, 6)

        report = build_stock_report(self.store_a)

        rows = {row["item_code"]: row for row in report["rows"]}
        self.assertEqual(rows["ITM-1"]["status"], StockStatus.LOW)
        self.assertEqual(rows["ITM-1"]["cost_valuation"], Decimal("24.00"))
        self.assertEqual(rows["ITM-1"]["retail_valuation"], Decimal("42.00"))
        self.assertEqual(rows["ITM-1"]["profit_margin_total"], Decimal("18.00"))
        self.assertEqual(rows["ITM-2"]["status"], StockStatus.OUT_OF_STOCK)
        self.assertEqual(report["summary"]["cost_valuation"], Decimal("24.00"))
        self.assertEqual(report["by_status"][StockStatus.LOW], 1)
        self.assertEqual(report["by_status"][StockStatus.OUT_OF_STOCK], 1)

    def test_report_status_filter_keeps_full_counts(self):
        self.receive(self.item, self.store_a, 6)

        report = build_stock_report(self.store_a, status=StockStatus.OUT_OF_STOCK)

        self.assertEqual([row["item_code"] for row in report["rows"]], ["ITM-2"])
        self.assertEqual(report["by_status"][StockStatus.LOW], 1)

    def test_report_can_skip_items_that_never_moved(self):
        self.receive(self.item, self.store_a, 6)

        report = build_stock_report(self.store_a, include_zero=False)

        self.assertEqual([row["item_code"] for row in report["rows"]], ["ITM-1"])


class StockDocumentApiTests(StockFixtureMixin, TestCase):
    def grn_payload(self, store=None, quantity="5", unit_price="10.00"):
        return {
            "store": str((store or self.store_a).id),
            "supplier": str(self.supplier.id),
            "supplier_invoice_no": "INV-77",
            "lines": [{"item": str(self.item.id), "quantity": quantity, "unit_price": unit_price}],
        }

    def test_supervisor_posts_grn(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post("/api/v1/grns/", self.grn_payload(), format="json")

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["total"], "50.00")
        self.assertEqual(payload["lines"][0]["item_code"], "ITM-1")
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("5"))
        self.assertTrue(AuditLog.objects.filter(action="grn.post", entity_id=payload["id"]).exists())

    def test_cashier_cannot_post_grn(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/grns/", self.grn_payload(), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertFalse(GoodsReceivedNote.objects.exists())

    def test_supervisor_cannot_post_to_other_store(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post("/api/v1/grns/", self.grn_payload(store=self.store_b), format="json")

        self.assertEqual(response.status_code, 403)
        self.assertFalse(GoodsReceivedNote.objects.exists())

    def test_document_list_is_store_scoped(self):
        self.receive(self.item, self.store_a, 1)
        self.receive(self.item, self.store_b, 1)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/grns/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["results"][0]["store"], str(self.store_a.id))

    def test_adjustment_shortage_returns_conflict_envelope(self):
        self.receive(self.item, self.store_a, 2)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/stock-adjustments/",
            {
                "store": str(self.store_a.id),
                "lines": [{"item": str(self.item.id), "quantity": "-5", "reason_code": "theft_loss"}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(payload["status"], 409)
        self.assertEqual(payload["errors"]["shortages"][0]["available"], "2.000")
        self.assertEqual(payload["errors"]["shortages"][0]["requested"], "5.000")

    def test_adjustment_requires_known_reason(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/stock-adjustments/",
            {
                "store": str(self.store_a.id),
                "lines": [{"item": str(self.item.id), "quantity": "1", "reason_code": "because"}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_dispatch_to_same_store_returns_cross_store(self):
        self.receive(self.item, self.store_a, 5)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/dispatches/",
            {
                "store": str(self.store_a.id),
                "destination_store": str(self.store_a.id),
                "lines": [{"item": str(self.item.id), "quantity": "1"}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "cross_store")

    def test_destination_store_sees_incoming_dispatch(self):
        self.receive(self.item, self.store_b, 5)
        post_dispatch(self.store_b, self.store_a, [dispatch_line(self.item, 2)], ledger=self.ledger)
        self.client.force_authenticate(user=self.supervisor)

        outgoing = self.client.get("/api/v1/dispatches/")
        incoming = self.client.get("/api/v1/dispatches/?incoming=1")

        self.assertEqual(outgoing.json()["count"], 0)
        self.assertEqual(incoming.json()["count"], 1)

    def test_purchase_return_via_api_defaults_item_from_source_line(self):
        grn = self.receive(self.item, self.store_a, 10).document
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/purchase-returns/",
            {"grn": str(grn.id), "lines": [{"source_line": str(grn.lines.get().id), "quantity": "3"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["lines"][0]["item"], str(self.item.id))
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("7"))

    def test_cancel_endpoint_and_double_cancel(self):
        grn = self.receive(self.item, self.store_a, 4).document
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(f"/api/v1/grns/{grn.id}/cancel/", format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelled")

        again = self.client.post(f"/api/v1/grns/{grn.id}/cancel/", format="json")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "invalid_document_state")

        movements = self.client.get(f"/api/v1/grns/{grn.id}/movements/")
        self.assertEqual(
            [row["transaction_type"] for row in movements.json()],
            [TransactionType.GRN, TransactionType.GRN_REVERSAL],
        )

    def test_cashier_cannot_cancel_documents(self):
        grn = self.receive(self.item, self.store_a, 4).document
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(f"/api/v1/grns/{grn.id}/cancel/", format="json")

        self.assertEqual(response.status_code, 403)


class StockLedgerApiTests(StockFixtureMixin, TestCase):
    def test_projection_includes_status(self):
        self.receive(self.item, self.store_a, 4)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get(f"/api/v1/stock/projection/?item={self.item.id}&store={self.store_a.id}")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["quantity_on_hand"], "4.000")
        self.assertEqual(payload["status"], StockStatus.CRITICAL)

    def test_history_is_paginated(self):
        self.receive(self.item, self.store_a, 4)
        self.receive(self.item, self.store_a, 2)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get(f"/api/v1/stock/history/?item={self.item.id}&store={self.store_a.id}")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["count"], 2)
        self.assertEqual([row["running_balance"] for row in payload["results"]], ["4.000", "6.000"])
        self.assertEqual(payload["closing_balance"], "6.000")

    def test_cashier_cannot_read_other_store_stock(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get(f"/api/v1/stock/current/?store={self.store_b.id}")

        self.assertEqual(response.status_code, 403)

    def test_current_stock_report(self):
        self.receive(self.item, self.store_a, 6)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get(f"/api/v1/stock/current/?store={self.store_a.id}&status=LOW")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual([row["item_code"] for row in payload["rows"]], ["ITM-1"])
        self.assertEqual(payload["by_status"]["OUT_OF_STOCK"], 1)

    def test_reverse_movement_endpoint(self):
        movement = self.ledger.apply_movement(self.item.id, self.store_a.id, TransactionType.ADJUSTMENT_IN, 4)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            f"/api/v1/stock/movements/{movement.id}/reverse/",
            {"notes": "Keyed twice"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["transaction_type"], TransactionType.ADJUSTMENT_IN_REVERSAL)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("0"))
        self.assertTrue(AuditLog.objects.filter(action="stock_movement.reverse").exists())

        again = self.client.post(f"/api/v1/stock/movements/{movement.id}/reverse/", {}, format="json")
        self.assertEqual(again.status_code, 409)

    def test_reverse_endpoint_refuses_dispatch_leg(self):
        self.receive(self.item, self.store_a, 20)
        dispatch = post_dispatch(self.store_a, self.store_b, [dispatch_line(self.item, 10)], ledger=self.ledger).document
        transfer_out = dispatch.movements().get(transaction_type=TransactionType.TRANSFER_OUT)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(f"/api/v1/stock/movements/{transfer_out.id}/reverse/", {}, format="json")

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "invalid_document_state")
        self.assertEqual(payload["errors"]["document_number"], dispatch.number)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("10"))
        self.assertEqual(self.stock(self.item, self.store_b), Decimal("10"))
        self.assertFalse(AuditLog.objects.filter(action="stock_movement.reverse").exists())

    def test_cashier_cannot_reverse_movements(self):
        movement = self.receive(self.item, self.store_a, 4).movements[0]
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(f"/api/v1/stock/movements/{movement.id}/reverse/", {}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(self.stock(self.item, self.store_a), Decimal("4"))

    def test_pricing_preview(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/pricing/preview/",
            {"quantity": "3", "unit_price": "100", "discount_percent": "10", "tax_method": "exclusive", "tax_rate": "15"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["discount_value"], "30.00")
        self.assertEqual(payload["tax_value"], "40.50")
        self.assertEqual(payload["net_value"], "310.50")


class MasterDataApiTests(StockFixtureMixin, TestCase):
    def test_admin_creates_item_and_cashier_cannot(self):
        payload = {"code": "ITM-3", "name": "Thing", "cost_price": "1.00", "retail_price": "2.00"}

        self.client.force_authenticate(user=self.cashier)
        denied = self.client.post("/api/v1/items/", payload, format="json")
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.admin)
        created = self.client.post("/api/v1/items/", payload, format="json")
        self.assertEqual(created.status_code, 201)
        self.assertTrue(AuditLog.objects.filter(action="item.create").exists())

    def test_item_price_update(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/items/{self.item.id}/prices/", {"retail_price": "8.25"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.item.refresh_from_db()
        self.assertEqual(self.item.retail_price, Decimal("8.25"))

    def test_delete_deactivates_item(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/items/{self.item.id}/")

        self.assertEqual(response.status_code, 204)
        self.item.refresh_from_db()
        self.assertFalse(self.item.is_active)


class VerifyStockLedgerCommandTests(StockFixtureMixin, TestCase):
    def test_clean_ledger_verifies(self):
        self.receive(self.item, self.store_a, 3)
        out = StringIO()

        call_command("verify_stock_ledger", stdout=out)

        self.assertIn("Verified 1 stock projection(s)", out.getvalue())

    def test_divergence_fails_command(self):
        self.receive(self.item, self.store_a, 3)
        self.receive(self.item, self.store_b, 3)
        StoreItemStock.objects.filter(store=self.store_b).update(quantity_on_hand=Decimal("1"))

        call_command("verify_stock_ledger", "--store", "A", stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command("verify_stock_ledger", stdout=StringIO())
