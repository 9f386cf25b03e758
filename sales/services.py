"""Sale, sales return and quotation postings on top of the inventory movement policies."""

import logging
import uuid
from collections import defaultdict
from decimal import Decimal

from django.db import transaction
from django.utils import timezone

from inventory.documents import DocumentLine, DocumentType
from inventory.exceptions import AlreadyConvertedError, DocumentStateError, ExpiredError, ValidationError
from inventory.ledger import Reference, get_stock_ledger, projection_key, run_with_conflict_retry
from inventory.models import StockDocument, StockMovement
from inventory.numbering import next_document_number
from inventory.policies import (
    PlannedLine,
    PostingResult,
    apply_planned_movements,
    create_document,
    ensure_available,
    log_posted,
    plan_return_lines,
    post_purchase_return,
    priced_line_fields,
    require_document_type,
    returnable_quantities,
    reverse_document,
)
from inventory.pricing import ZERO, Absolute, Percent, summarize
from inventory.services import load_items
from sales.models import Quotation, QuotationLine, Sale, SaleLine, SalesReturn, SalesReturnLine

logger = logging.getLogger(__name__)

SALE_DOCUMENT_TYPES = {
    Sale.SaleType.RETAIL: DocumentType.RETAIL_SALE,
    Sale.SaleType.WHOLESALE: DocumentType.WHOLESALE_SALE,
}


def sale_document_type(sale_type):
    try:
        return SALE_DOCUMENT_TYPES[Sale.SaleType(sale_type)]
    except ValueError:
        raise ValidationError(f"Unknown sale type '{sale_type}'.", sale_type=sale_type) from None


def default_selling_price(item, sale_type):
    if sale_type == Sale.SaleType.WHOLESALE:
        return item.wholesale_price
    return item.retail_price


def _validate_payment(payment_status, payment_method):
    if payment_status not in Sale.PaymentStatus.values:
        raise ValidationError(f"Unknown payment status '{payment_status}'.", payment_status=payment_status)
    if payment_method not in Sale.PaymentMethod.values:
        raise ValidationError(f"Unknown payment method '{payment_method}'.", payment_method=payment_method)


# Sales


def _post_sale(
    store,
    lines,
    sale_type,
    customer,
    payment_status,
    payment_method,
    notes,
    user,
    ledger,
    quotation=None,
    quotation_lines=None,
    freeze_terms=False,
):
    require_document_type(lines, sale_document_type(sale_type))
    sale_type = Sale.SaleType(sale_type)
    _validate_payment(payment_status, payment_method)
    quotation_lines = quotation_lines or {}
    items = load_items([line.item_id for line in lines])

    planned = []
    for line in lines:
        item = items[line.item_id]
        unit_price = default_selling_price(item, sale_type) if line.unit_price is None else line.unit_price
        frozen = quotation_lines.get(line.source_line_id) if freeze_terms else None
        price, fields = priced_line_fields(
            line,
            item,
            unit_price,
            tax_method=frozen.tax_method if frozen else None,
            tax_rate=frozen.tax_rate if frozen else None,
        )
        planned.append(PlannedLine(line=line, item=item, fields=fields, price=price))

    with transaction.atomic():
        projections = ledger.lock_projections((entry.item.id, store.id) for entry in planned)
        demand = defaultdict(Decimal)
        for entry in planned:
            demand[projection_key(entry.item.id, store.id)] += entry.line.quantity
        ensure_available(ledger, projections, demand, Reference(type=Sale.reference_type))

        document = create_document(
            Sale,
            store,
            user,
            summarize(entry.price for entry in planned),
            prefix=Sale.NUMBER_PREFIXES[sale_type],
            sale_type=sale_type,
            customer=customer,
            payment_status=payment_status,
            payment_method=payment_method,
            quotation=quotation,
            notes=notes,
        )
        SaleLine.objects.bulk_create(
            SaleLine(
                sale=document,
                quotation_line=quotation_lines.get(entry.line.source_line_id),
                **entry.fields,
            )
            for entry in planned
        )
        movements = apply_planned_movements(ledger, document, planned, projections, StockMovement.TransactionType.SALE, -1, user)

    log_posted(document, movements)
    return PostingResult(document=document, movements=movements)


def post_sale(
    store,
    lines,
    *,
    sale_type=Sale.SaleType.RETAIL,
    customer=None,
    payment_status=Sale.PaymentStatus.UNPAID,
    payment_method=Sale.PaymentMethod.CASH,
    notes="",
    user=None,
    ledger=None,
):
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(
        _post_sale, store, lines, sale_type, customer, payment_status, payment_method, notes, user, ledger
    )


def _cancel_sale(sale, user, ledger):
    with transaction.atomic():
        result = reverse_document(sale, user, ledger)
        reopened = QuotationLine.objects.filter(converted_sale=result.document).update(converted_sale=None)
        if reopened and result.document.quotation_id:
            Quotation.objects.filter(pk=result.document.quotation_id, status=Quotation.Status.CONVERTED).update(
                status=Quotation.Status.ACTIVE,
                updated_at=timezone.now(),
            )
    return result


def cancel_sale(sale, *, user=None, ledger=None):
    """Cancel a sale; quotation lines it converted become convertible again."""
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(_cancel_sale, sale, user, ledger)


# Returns


def _post_sales_return(sale, lines, reason, notes, user, ledger):
    require_document_type(lines, DocumentType.SALES_RETURN)
    items = load_items([line.item_id for line in lines])
    store = sale.store

    with transaction.atomic():
        sale = Sale.objects.select_for_update().get(pk=sale.pk)
        if sale.status != StockDocument.Status.POSTED:
            raise DocumentStateError("Cannot return against a cancelled sale.", sale_id=sale.id, status=sale.status)
        source_lines = {line.id: line for line in sale.lines.all()}
        unknown = [str(line.source_line_id) for line in lines if line.source_line_id not in source_lines]
        if unknown:
            raise ValidationError("Return lines must reference lines of the selected sale.", sale_line_ids=unknown)

        remaining = returnable_quantities(list(source_lines.values()), SalesReturnLine, "sale_line")
        planned = plan_return_lines(lines, source_lines, remaining, items)
        projections = ledger.lock_projections((entry.item.id, store.id) for entry in planned)

        document = create_document(
            SalesReturn,
            store,
            user,
            summarize(entry.price for entry in planned),
            sale=sale,
            reason=reason,
            notes=notes,
        )
        SalesReturnLine.objects.bulk_create(
            SalesReturnLine(sales_return=document, sale_line_id=entry.line.source_line_id, **entry.fields)
            for entry in planned
        )
        movements = apply_planned_movements(
            ledger, document, planned, projections, StockMovement.TransactionType.SALES_RETURN, 1, user
        )

    log_posted(document, movements)
    return PostingResult(document=document, movements=movements)


def post_sales_return(sale, lines, *, reason="", notes="", user=None, ledger=None):
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(_post_sales_return, sale, lines, reason, notes, user, ledger)


def post_return(original, lines, **kwargs):
    """Post a sales return against a ``Sale`` or a purchase return against a GRN."""
    if isinstance(original, Sale):
        return post_sales_return(original, lines, **kwargs)
    return post_purchase_return(original, lines, **kwargs)


# Quotations


def _quotation_discount(line):
    if line.discount_is_override:
        return Absolute(line.discount_value)
    return Percent(line.discount_percent)


def create_quotation(
    store,
    lines,
    *,
    valid_until,
    customer=None,
    reserve_stock=False,
    terms="",
    notes="",
    user=None,
    ledger=None,
):
    ledger = ledger or get_stock_ledger()
    require_document_type(lines, DocumentType.QUOTATION)
    if valid_until < timezone.localdate():
        raise ValidationError("valid_until must not be in the past.", valid_until=valid_until)
    items = load_items([line.item_id for line in lines])

    planned = []
    for line in lines:
        item = items[line.item_id]
        unit_price = item.retail_price if line.unit_price is None else line.unit_price
        price, fields = priced_line_fields(line, item, unit_price)
        planned.append(PlannedLine(line=line, item=item, fields=fields, price=price))

    with transaction.atomic():
        totals = summarize(entry.price for entry in planned)
        quotation = Quotation.objects.create(
            number=next_document_number(store, Quotation.number_prefix),
            store=store,
            customer=customer,
            valid_until=valid_until,
            reserve_stock=reserve_stock,
            terms=terms,
            notes=notes,
            created_by=user,
            **totals.as_fields(),
        )
        quotation_lines = QuotationLine.objects.bulk_create(
            QuotationLine(quotation=quotation, line_no=index, **entry.fields)
            for index, entry in enumerate(planned, start=1)
        )

        if reserve_stock:
            projections = ledger.lock_projections((entry.item.id, store.id) for entry in planned)
            demand = defaultdict(Decimal)
            for entry in planned:
                demand[projection_key(entry.item.id, store.id)] += entry.line.quantity
            ensure_available(ledger, projections, demand, Reference(type="sales.quotation", id=quotation.id))
            for quotation_line, entry in zip(quotation_lines, planned):
                ledger.reserve(
                    entry.item.id,
                    store.id,
                    entry.line.quantity,
                    projection=projections[projection_key(entry.item.id, store.id)],
                )
                quotation_line.reserved_quantity = entry.line.quantity
            QuotationLine.objects.bulk_update(quotation_lines, ["reserved_quantity"])

    logger.info(
        "quotation_created number=%s lines=%s reserved=%s",
        quotation.number,
        len(planned),
        reserve_stock,
        extra={"reference_type": "sales.quotation", "reference_id": str(quotation.id), "store_id": str(store.id)},
    )
    return quotation


def _release_reservations(quotation_lines, store, ledger):
    for line in quotation_lines:
        if line.reserved_quantity and Decimal(line.reserved_quantity) > ZERO:
            ledger.release(line.item_id, store.id, line.reserved_quantity)
            line.reserved_quantity = ZERO
            line.save(update_fields=["reserved_quantity"])


def _select_lines(quotation, selected_line_ids):
    all_lines = {line.id: line for line in quotation.lines.select_related("item")}
    open_lines = [line for line in all_lines.values() if line.converted_sale_id is None]
    if selected_line_ids is None:
        return open_lines

    wanted = []
    for line_id in selected_line_ids:
        try:
            wanted.append(uuid.UUID(str(line_id)))
        except ValueError:
            raise ValidationError("Quotation line ids must be UUIDs.", line_id=line_id) from None
    unknown = [str(line_id) for line_id in wanted if line_id not in all_lines]
    if unknown:
        raise ValidationError("Lines do not belong to this quotation.", line_ids=unknown)
    converted = [str(line_id) for line_id in wanted if all_lines[line_id].converted_sale_id is not None]
    if converted:
        raise AlreadyConvertedError("Some selected lines were already converted.", line_ids=converted)
    return [all_lines[line_id] for line_id in dict.fromkeys(wanted)]


def _convert_quotation(quotation, selected_line_ids, sale_type, payment_status, payment_method, reprice, notes, user, ledger):
    with transaction.atomic():
        quotation = Quotation.objects.select_for_update().get(pk=quotation.pk)
        if quotation.status != Quotation.Status.ACTIVE:
            raise AlreadyConvertedError(
                f"Quotation {quotation.number} is {quotation.status}.",
                quotation_id=quotation.id,
                status=quotation.status,
            )
        today = timezone.localdate()
        if quotation.valid_until < today:
            raise ExpiredError(
                f"Quotation {quotation.number} expired on {quotation.valid_until}.",
                quotation_id=quotation.id,
                valid_until=quotation.valid_until,
                today=today,
            )

        selected = _select_lines(quotation, selected_line_ids)
        if not selected:
            raise ValidationError("Quotation has no lines left to convert.", quotation_id=quotation.id)

        _release_reservations(selected, quotation.store, ledger)

        document_type = sale_document_type(sale_type)
        lines = [
            DocumentLine(
                document_type=document_type,
                item_id=line.item_id,
                quantity=line.quantity,
                unit_price=None if reprice else line.unit_price,
                discount=None if reprice else _quotation_discount(line),
                batch_no=line.batch_no,
                source_line_id=line.id,
            )
            for line in selected
        ]
        result = _post_sale(
            quotation.store,
            lines,
            sale_type,
            quotation.customer,
            payment_status,
            payment_method,
            notes or f"Converted from {quotation.number}",
            user,
            ledger,
            quotation=quotation,
            quotation_lines={line.id: line for line in selected},
            freeze_terms=not reprice,
        )
        QuotationLine.objects.filter(pk__in=[line.id for line in selected]).update(converted_sale=result.document)

        fully_converted = not quotation.lines.filter(converted_sale__isnull=True).exists()
        if fully_converted:
            quotation.status = Quotation.Status.CONVERTED
            quotation.save(update_fields=["status", "updated_at"])

    logger.info(
        "quotation_converted number=%s sale=%s lines=%s fully_converted=%s",
        quotation.number,
        result.document.number,
        len(selected),
        fully_converted,
        extra={"reference_type": "sales.quotation", "reference_id": str(quotation.id), "store_id": str(quotation.store_id)},
    )
    return result


def convert_quotation(
    quotation,
    selected_line_ids=None,
    *,
    sale_type=Sale.SaleType.RETAIL,
    payment_status=Sale.PaymentStatus.UNPAID,
    payment_method=Sale.PaymentMethod.CASH,
    reprice=False,
    notes="",
    user=None,
    ledger=None,
):
    """Convert the selected (default: all unconverted) quotation lines into a new sale.

    The quotation becomes ``converted`` only once no unconverted line is left.
    """
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(
        _convert_quotation,
        quotation,
        selected_line_ids,
        sale_type,
        payment_status,
        payment_method,
        reprice,
        notes,
        user,
        ledger,
    )


def cancel_quotation(quotation, *, user=None, ledger=None):
    ledger = ledger or get_stock_ledger()
    with transaction.atomic():
        quotation = Quotation.objects.select_for_update().get(pk=quotation.pk)
        if quotation.status not in {Quotation.Status.ACTIVE, Quotation.Status.EXPIRED}:
            raise DocumentStateError(
                f"Quotation {quotation.number} is {quotation.status}.",
                quotation_id=quotation.id,
                status=quotation.status,
            )
        _release_reservations(quotation.lines.filter(converted_sale__isnull=True), quotation.store, ledger)
        quotation.status = Quotation.Status.CANCELLED
        quotation.save(update_fields=["status", "updated_at"])
    return quotation


def expire_quotations(today=None, ledger=None):
    """Mark active quotations past ``valid_until`` as expired and release their reservations."""
    ledger = ledger or get_stock_ledger()
    today = today or timezone.localdate()
    expired = 0
    for quotation_id in Quotation.objects.filter(status=Quotation.Status.ACTIVE, valid_until__lt=today).values_list(
        "id", flat=True
    ):
        with transaction.atomic():
            quotation = Quotation.objects.select_for_update().get(pk=quotation_id)
            if quotation.status != Quotation.Status.ACTIVE:
                continue
            _release_reservations(quotation.lines.filter(converted_sale__isnull=True), quotation.store, ledger)
            quotation.status = Quotation.Status.EXPIRED
            quotation.save(update_fields=["status", "updated_at"])
            expired += 1
    return expired
