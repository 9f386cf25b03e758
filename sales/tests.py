from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog, Store
from inventory.documents import DocumentLine, DocumentType
from inventory.exceptions import (
    AlreadyConvertedError,
    DocumentStateError,
    ExpiredError,
    InsufficientStockError,
    ValidationError,
)
from inventory.ledger import StockLedger
from inventory.models import Item, PurchaseReturn, StockMovement, Supplier
from inventory.policies import cancel_document, post_grn, post_opening_stock
from inventory.pricing import Absolute, Percent, TaxMethod
from sales.models import Customer, Quotation, Sale, SalesReturn
from sales.services import (
    cancel_quotation,
    cancel_sale,
    convert_quotation,
    create_quotation,
    expire_quotations,
    post_return,
    post_sale,
    post_sales_return,
)


def sale_line(item, quantity, document_type=DocumentType.RETAIL_SALE, **kwargs):
    return DocumentLine(document_type, item.id, Decimal(quantity), **kwargs)


def quote_line(item, quantity, **kwargs):
    return DocumentLine(DocumentType.QUOTATION, item.id, Decimal(quantity), **kwargs)


def return_line(source_line, quantity):
    return DocumentLine(DocumentType.SALES_RETURN, source_line.item_id, Decimal(quantity), source_line_id=source_line.id)


class SalesFixtureMixin:
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.ledger = StockLedger(allow_negative=False)

        self.store = Store.objects.create(code="A", name="Store A")
        self.other_store = Store.objects.create(code="B", name="Store B")
        self.customer = Customer.objects.create(code="CUS-1", name="Acme Trading", phone="+201000000001")
        self.item = Item.objects.create(
            code="ITM-1",
            name="Widget",
            cost_price=Decimal("60.00"),
            retail_price=Decimal("100.00"),
            wholesale_price=Decimal("90.00"),
            tax_method=TaxMethod.EXCLUSIVE,
            tax_rate=Decimal("15.00"),
            reorder_level=2,
        )
        self.other_item = Item.objects.create(
            code="ITM-2",
            name="Gadget",
            cost_price=Decimal("5.00"),
            retail_price=Decimal("8.00"),
            wholesale_price=Decimal("7.00"),
        )

        self.cashier = self.user_model.objects.create_user(
            username="cashier",
            password="pass1234",
            role=self.user_model.Role.CASHIER,
            store=self.store,
        )
        self.supervisor = self.user_model.objects.create_user(
            username="supervisor",
            password="pass1234",
            role=self.user_model.Role.SUPERVISOR,
            store=self.store,
        )

    def stock_up(self, item, quantity, store=None):
        post_opening_stock(
            store or self.store,
            [DocumentLine(DocumentType.OPENING_STOCK, item.id, Decimal(quantity))],
            ledger=self.ledger,
        )

    def projection(self, item, store=None):
        return self.ledger.get_projection(item.id, (store or self.store).id)

    def valid_until(self, days=7):
        return timezone.localdate() + timedelta(days=days)


class SalePostingTests(SalesFixtureMixin, TestCase):
    def test_retail_sale_prices_lines_with_item_defaults(self):
        self.stock_up(self.item, 10)

        result = post_sale(
            self.store,
            [sale_line(self.item, 3, discount=Percent(Decimal("10")))],
            user=self.cashier,
            ledger=self.ledger,
        )

        sale = result.document
        line = sale.lines.get()
        self.assertTrue(sale.number.startswith("A-SINV-"))
        self.assertEqual(line.unit_price, Decimal("100.00"))
        self.assertEqual(line.discount_value, Decimal("30.00"))
        self.assertEqual(line.tax_value, Decimal("40.50"))
        self.assertEqual(line.net_value, Decimal("310.50"))
        self.assertEqual(sale.total, Decimal("310.50"))
        self.assertEqual(result.movements[0].transaction_type, StockMovement.TransactionType.SALE)
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("7"))

    def test_wholesale_sale_uses_wholesale_price(self):
        self.stock_up(self.item, 10)

        result = post_sale(
            self.store,
            [sale_line(self.item, 2, DocumentType.WHOLESALE_SALE)],
            sale_type=Sale.SaleType.WHOLESALE,
            customer=self.customer,
            ledger=self.ledger,
        )

        self.assertTrue(result.document.number.startswith("A-WINV-"))
        self.assertEqual(result.document.lines.get().unit_price, Decimal("90.00"))

    def test_line_type_must_match_sale_type(self):
        self.stock_up(self.item, 10)

        with self.assertRaises(ValidationError):
            post_sale(self.store, [sale_line(self.item, 1, DocumentType.WHOLESALE_SALE)], ledger=self.ledger)

    def test_second_sale_for_last_units_is_refused(self):
        self.stock_up(self.item, 5)

        post_sale(self.store, [sale_line(self.item, 3)], ledger=self.ledger)
        with self.assertRaises(InsufficientStockError) as ctx:
            post_sale(self.store, [sale_line(self.item, 3)], ledger=self.ledger)

        self.assertEqual(ctx.exception.context["shortages"][0]["available"], "2.000")
        self.assertEqual(Sale.objects.count(), 1)
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("2"))

    def test_cancel_sale_restores_stock(self):
        self.stock_up(self.item, 5)
        sale = post_sale(self.store, [sale_line(self.item, 3)], ledger=self.ledger).document

        result = cancel_sale(sale, user=self.supervisor, ledger=self.ledger)

        self.assertEqual(result.document.status, Sale.Status.CANCELLED)
        self.assertEqual(result.movements[0].transaction_type, StockMovement.TransactionType.SALE_REVERSAL)
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("5"))


class SalesReturnTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.stock_up(self.item, 10)
        self.sale = post_sale(
            self.store,
            [sale_line(self.item, 3, discount=Percent(Decimal("10")))],
            ledger=self.ledger,
        ).document
        self.sale_line = self.sale.lines.get()

    def test_return_uses_frozen_sale_terms(self):
        Item.objects.filter(pk=self.item.pk).update(retail_price=Decimal("200.00"), tax_rate=Decimal("0"))

        result = post_sales_return(self.sale, [return_line(self.sale_line, 1)], reason="Wrong size", ledger=self.ledger)

        line = result.document.lines.get()
        self.assertEqual(line.unit_price, Decimal("100.00"))
        self.assertEqual(line.discount_value, Decimal("10.00"))
        self.assertEqual(line.tax_value, Decimal("13.50"))
        self.assertEqual(line.net_value, Decimal("103.50"))
        self.assertEqual(result.movements[0].transaction_type, StockMovement.TransactionType.SALES_RETURN)
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("8"))
        self.sale_line.refresh_from_db()
        self.assertEqual(self.sale_line.quantity, Decimal("3"))

    def test_return_cannot_exceed_sold_quantity(self):
        post_sales_return(self.sale, [return_line(self.sale_line, 1)], ledger=self.ledger)

        with self.assertRaises(ValidationError) as ctx:
            post_sales_return(self.sale, [return_line(self.sale_line, 3)], ledger=self.ledger)

        self.assertEqual(ctx.exception.context["lines"][0]["returnable"], "2.000")
        self.assertEqual(SalesReturn.objects.count(), 1)

    def test_sale_movement_cannot_be_reversed_outside_the_sale(self):
        movement = self.sale.movements().get()

        with self.assertRaises(DocumentStateError) as ctx:
            self.ledger.reverse_movement(movement.id)

        self.assertEqual(ctx.exception.context["document_number"], self.sale.number)
        post_sales_return(self.sale, [return_line(self.sale_line, 3)], ledger=self.ledger)
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("10"))
        self.assertEqual(list(self.ledger.verify()), [])

    def test_cancelled_return_frees_returnable_quantity(self):
        sales_return = post_sales_return(self.sale, [return_line(self.sale_line, 3)], ledger=self.ledger).document

        cancel_document(sales_return, ledger=self.ledger)
        post_sales_return(self.sale, [return_line(self.sale_line, 3)], ledger=self.ledger)

        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("10"))

    def test_absolute_discount_is_prorated_on_return(self):
        self.stock_up(self.other_item, 10)
        sale = post_sale(
            self.store,
            [sale_line(self.other_item, 4, discount=Absolute(Decimal("2.00")))],
            ledger=self.ledger,
        ).document
        source = sale.lines.get()
        self.assertTrue(source.discount_is_override)

        result = post_sales_return(sale, [return_line(source, 1)], ledger=self.ledger)

        line = result.document.lines.get()
        self.assertEqual(line.discount_value, Decimal("0.50"))
        self.assertEqual(line.net_value, Decimal("7.50"))

    def test_sale_with_posted_return_cannot_be_cancelled(self):
        post_sales_return(self.sale, [return_line(self.sale_line, 1)], ledger=self.ledger)

        with self.assertRaises(DocumentStateError):
            cancel_sale(self.sale, ledger=self.ledger)

    def test_return_against_cancelled_sale_is_refused(self):
        cancel_sale(self.sale, ledger=self.ledger)

        with self.assertRaises(DocumentStateError):
            post_sales_return(self.sale, [return_line(self.sale_line, 1)], ledger=self.ledger)

    def test_post_return_dispatches_on_original_document(self):
        supplier = Supplier.objects.create(code="SUP-1", name="Supplier")
        grn = post_grn(
            self.store,
            [DocumentLine(DocumentType.GRN, self.other_item.id, Decimal("5"), unit_price=Decimal("5.00"))],
            supplier=supplier,
            ledger=self.ledger,
        ).document

        sales_return = post_return(self.sale, [return_line(self.sale_line, 1)], ledger=self.ledger).document
        purchase_return = post_return(
            grn,
            [
                DocumentLine(
                    DocumentType.PURCHASE_RETURN,
                    self.other_item.id,
                    Decimal("2"),
                    source_line_id=grn.lines.get().id,
                )
            ],
            ledger=self.ledger,
        ).document

        self.assertIsInstance(sales_return, SalesReturn)
        self.assertIsInstance(purchase_return, PurchaseReturn)
        self.assertEqual(self.projection(self.other_item).quantity_on_hand, Decimal("3"))


class QuotationConversionTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.stock_up(self.item, 10)
        self.stock_up(self.other_item, 10)

    def quotation(self, **kwargs):
        kwargs.setdefault("valid_until", self.valid_until())
        kwargs.setdefault("ledger", self.ledger)
        return create_quotation(
            self.store,
            [quote_line(self.item, 2, discount=Percent(Decimal("5"))), quote_line(self.other_item, 3)],
            **kwargs,
        )

    def test_quotation_is_priced_but_moves_no_stock(self):
        quotation = self.quotation(customer=self.customer)

        self.assertTrue(quotation.number.startswith("A-QUOT-"))
        self.assertEqual(quotation.status, Quotation.Status.ACTIVE)
        self.assertEqual([line.line_no for line in quotation.lines.all()], [1, 2])
        self.assertEqual(quotation.total, Decimal("242.50"))
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("10"))
        self.assertFalse(StockMovement.objects.filter(transaction_type=StockMovement.TransactionType.SALE).exists())

    def test_partial_conversion_leaves_remainder_convertible(self):
        quotation = self.quotation()
        first, second = quotation.lines.all()

        result = convert_quotation(quotation, [first.id], ledger=self.ledger)

        sale = result.document
        self.assertEqual(sale.lines.count(), 1)
        self.assertEqual(sale.lines.get().quotation_line_id, first.id)
        self.assertEqual(sale.quotation_id, quotation.id)
        quotation.refresh_from_db()
        self.assertEqual(quotation.status, Quotation.Status.ACTIVE)
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("8"))

        remainder = convert_quotation(quotation, ledger=self.ledger)

        self.assertEqual([line.item_id for line in remainder.document.lines.all()], [self.other_item.id])
        quotation.refresh_from_db()
        self.assertEqual(quotation.status, Quotation.Status.CONVERTED)

        with self.assertRaises(AlreadyConvertedError):
            convert_quotation(quotation, ledger=self.ledger)

    def test_selecting_converted_line_is_refused(self):
        quotation = self.quotation()
        first = quotation.lines.first()
        convert_quotation(quotation, [first.id], ledger=self.ledger)

        with self.assertRaises(AlreadyConvertedError):
            convert_quotation(quotation, [first.id], ledger=self.ledger)

    def test_unknown_line_is_refused(self):
        other = self.quotation()
        quotation = self.quotation()

        with self.assertRaises(ValidationError):
            convert_quotation(quotation, [other.lines.first().id], ledger=self.ledger)

    def test_conversion_carries_frozen_terms_unless_repriced(self):
        frozen = self.quotation()
        repriced = self.quotation()
        Item.objects.filter(pk=self.item.pk).update(retail_price=Decimal("120.00"))

        kept = convert_quotation(frozen, [frozen.lines.first().id], ledger=self.ledger).document.lines.get()
        fresh = convert_quotation(repriced, [repriced.lines.first().id], reprice=True, ledger=self.ledger).document.lines.get()

        self.assertEqual(kept.unit_price, Decimal("100.00"))
        self.assertEqual(kept.discount_percent, Decimal("5.00"))
        self.assertEqual(fresh.unit_price, Decimal("120.00"))
        self.assertEqual(fresh.discount_value, Decimal("0.00"))

    def test_conversion_revalidates_current_stock(self):
        quotation = self.quotation()
        post_sale(self.store, [sale_line(self.item, 9)], ledger=self.ledger)

        with self.assertRaises(InsufficientStockError):
            convert_quotation(quotation, ledger=self.ledger)

        quotation.refresh_from_db()
        self.assertEqual(quotation.status, Quotation.Status.ACTIVE)
        self.assertFalse(quotation.lines.filter(converted_sale__isnull=False).exists())

    def test_expired_quotation_cannot_convert(self):
        quotation = self.quotation()
        Quotation.objects.filter(pk=quotation.pk).update(valid_until=timezone.localdate() - timedelta(days=1))

        with self.assertRaises(ExpiredError):
            convert_quotation(quotation, ledger=self.ledger)

    def test_quotation_cannot_start_expired(self):
        with self.assertRaises(ValidationError):
            self.quotation(valid_until=timezone.localdate() - timedelta(days=1))

    def test_cancelling_converted_sale_reopens_quotation(self):
        quotation = self.quotation()
        sale = convert_quotation(quotation, ledger=self.ledger).document

        cancel_sale(sale, ledger=self.ledger)

        quotation.refresh_from_db()
        self.assertEqual(quotation.status, Quotation.Status.ACTIVE)
        self.assertFalse(quotation.lines.filter(converted_sale__isnull=False).exists())
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("10"))


class QuotationReservationTests(SalesFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.stock_up(self.item, 5)

    def reserved_quotation(self, quantity=4, **kwargs):
        return create_quotation(
            self.store,
            [quote_line(self.item, quantity)],
            valid_until=kwargs.pop("valid_until", self.valid_until()),
            reserve_stock=True,
            ledger=self.ledger,
            **kwargs,
        )

    def test_reservation_reduces_available_quantity(self):
        quotation = self.reserved_quotation()

        projection = self.projection(self.item)
        self.assertEqual(projection.quantity_on_hand, Decimal("5"))
        self.assertEqual(projection.reserved_quantity, Decimal("4"))
        self.assertEqual(quotation.lines.get().reserved_quantity, Decimal("4"))

        with self.assertRaises(InsufficientStockError):
            post_sale(self.store, [sale_line(self.item, 2)], ledger=self.ledger)

    def test_reservation_beyond_available_is_refused(self):
        with self.assertRaises(InsufficientStockError):
            self.reserved_quotation(quantity=6)

        self.assertFalse(Quotation.objects.exists())

    def test_conversion_consumes_reservation(self):
        quotation = self.reserved_quotation()

        convert_quotation(quotation, ledger=self.ledger)

        projection = self.projection(self.item)
        self.assertEqual(projection.quantity_on_hand, Decimal("1"))
        self.assertEqual(projection.reserved_quantity, Decimal("0"))

    def test_cancel_releases_reservation(self):
        quotation = self.reserved_quotation()

        cancel_quotation(quotation, ledger=self.ledger)

        quotation.refresh_from_db()
        self.assertEqual(quotation.status, Quotation.Status.CANCELLED)
        self.assertEqual(self.projection(self.item).reserved_quantity, Decimal("0"))
        with self.assertRaises(DocumentStateError):
            cancel_quotation(quotation, ledger=self.ledger)

    def test_expire_quotations_releases_reservations(self):
        stale = self.reserved_quotation(quantity=2)
        fresh = self.reserved_quotation(quantity=1, valid_until=self.valid_until(30))

        expired = expire_quotations(today=self.valid_until(8), ledger=self.ledger)

        self.assertEqual(expired, 1)
        stale.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(stale.status, Quotation.Status.EXPIRED)
        self.assertEqual(fresh.status, Quotation.Status.ACTIVE)
        self.assertEqual(self.projection(self.item).reserved_quantity, Decimal("1"))

    def test_expire_quotations_command(self):
        self.reserved_quotation(quantity=1)
        Quotation.objects.update(valid_until=timezone.localdate() - timedelta(days=1))
        out = StringIO()

        call_command("expire_quotations", stdout=out)

        self.assertIn("Expired 1 quotation(s).", out.getvalue())
        self.assertEqual(self.projection(self.item).reserved_quantity, Decimal("0"))


class SalesApiTests(SalesFixtureMixin, TestCase):
    def sale_payload(self, quantity="3", **extra):
        return {
            "store": str(self.store.id),
            "lines": [{"item": str(self.item.id), "quantity": quantity}],
            **extra,
        }

    def test_cashier_posts_sale(self):
        self.stock_up(self.item, 5)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/sales/",
            self.sale_payload(payment_status="paid", payment_method="card"),
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["total"], "345.00")
        self.assertEqual(payload["payment_status"], "paid")
        self.assertEqual(payload["lines"][0]["tax_value"], "45.00")
        self.assertTrue(AuditLog.objects.filter(action="sale.post").exists())

    def test_second_sale_for_last_units_returns_conflict(self):
        self.stock_up(self.item, 5)
        self.client.force_authenticate(user=self.cashier)

        first = self.client.post("/api/v1/sales/", self.sale_payload(), format="json")
        second = self.client.post("/api/v1/sales/", self.sale_payload(), format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 409)
        payload = second.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(payload["errors"]["shortages"][0]["available"], "2.000")
        self.assertEqual(payload["errors"]["shortages"][0]["requested"], "3.000")
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("2"))

    def test_wholesale_sale_requires_customer(self):
        self.stock_up(self.item, 5)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/sales/", self.sale_payload(sale_type="wholesale"), format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("customer", response.json()["errors"])

    def test_cashier_cannot_sell_from_other_store(self):
        self.stock_up(self.item, 5, store=self.other_store)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/sales/",
            {"store": str(self.other_store.id), "lines": [{"item": str(self.item.id), "quantity": "1"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 403)

    def test_sales_return_via_api(self):
        self.stock_up(self.item, 5)
        sale = post_sale(self.store, [sale_line(self.item, 3)], ledger=self.ledger).document
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/sales-returns/",
            {"sale": str(sale.id), "reason": "Damaged", "lines": [{"source_line": str(sale.lines.get().id), "quantity": "1"}]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["total"], "115.00")
        self.assertEqual(self.projection(self.item).quantity_on_hand, Decimal("3"))

    def test_only_supervisors_cancel_sales(self):
        self.stock_up(self.item, 5)
        sale = post_sale(self.store, [sale_line(self.item, 3)], ledger=self.ledger).document

        self.client.force_authenticate(user=self.cashier)
        denied = self.client.post(f"/api/v1/sales/{sale.id}/cancel/", format="json")
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.supervisor)
        response = self.client.post(f"/api/v1/sales/{sale.id}/cancel/", format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "cancelled")

    def test_quotation_create_and_partial_convert(self):
        self.stock_up(self.item, 5)
        self.stock_up(self.other_item, 5)
        self.client.force_authenticate(user=self.cashier)

        created = self.client.post(
            "/api/v1/quotations/",
            {
                "store": str(self.store.id),
                "valid_until": self.valid_until().isoformat(),
                "lines": [
                    {"item": str(self.item.id), "quantity": "1"},
                    {"item": str(self.other_item.id), "quantity": "2", "discount_value": "1.00"},
                ],
            },
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        quotation = created.json()
        first_line_id = quotation["lines"][0]["id"]

        converted = self.client.post(
            f"/api/v1/quotations/{quotation['id']}/convert/",
            {"line_ids": [first_line_id], "payment_status": "paid"},
            format="json",
        )

        self.assertEqual(converted.status_code, 201)
        payload = converted.json()
        self.assertEqual(payload["quotation"]["status"], "active")
        self.assertEqual(len(payload["sale"]["lines"]), 1)
        self.assertEqual(payload["sale"]["lines"][0]["quotation_line"], first_line_id)
        self.assertTrue(AuditLog.objects.filter(action="quotation.convert").exists())

    def test_wholesale_conversion_requires_customer_on_quotation(self):
        self.stock_up(self.item, 5)
        quotation = create_quotation(
            self.store,
            [quote_line(self.item, 1)],
            valid_until=self.valid_until(),
            ledger=self.ledger,
        )
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            f"/api/v1/quotations/{quotation.id}/convert/",
            {"sale_type": "wholesale"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_converting_converted_quotation_conflicts(self):
        self.stock_up(self.item, 5)
        quotation = create_quotation(
            self.store,
            [quote_line(self.item, 1)],
            valid_until=self.valid_until(),
            ledger=self.ledger,
        )
        convert_quotation(quotation, ledger=self.ledger)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(f"/api/v1/quotations/{quotation.id}/convert/", {}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "already_converted")
