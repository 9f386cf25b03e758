"""Movement policies: turn a validated stock document into ledger movements.

Each ``post_*`` entry point prices and validates every line against one
locked snapshot of the affected projections before any movement is applied,
then creates the document and applies its movements inside one transaction.
A lost optimistic race retries the whole posting (``run_with_conflict_retry``).
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from common.utils import to_money
from inventory.documents import DocumentType
from inventory.exceptions import CrossStoreError, DocumentStateError, InsufficientStockError, ValidationError
from inventory.ledger import Reference, get_stock_ledger, projection_key, run_with_conflict_retry
from inventory.models import (
    Dispatch,
    DispatchLine,
    GoodsReceivedLine,
    GoodsReceivedNote,
    OpeningStockEntry,
    OpeningStockLine,
    PurchaseReturn,
    PurchaseReturnLine,
    StockAdjustment,
    StockAdjustmentLine,
    StockDocument,
    StockMovement,
)
from inventory.numbering import next_document_number
from inventory.pricing import ZERO, Absolute, Percent, price_line, summarize
from inventory.services import load_items, total_on_hand, update_item_cost, update_item_prices

logger = logging.getLogger(__name__)

TransactionType = StockMovement.TransactionType


@dataclass
class PostingResult:
    document: object
    movements: list = field(default_factory=list)


@dataclass
class PlannedLine:
    line: object
    item: object
    fields: dict
    price: object = None
    unit_cost: object = None


def require_document_type(lines, document_type):
    if not lines:
        raise ValidationError("A document needs at least one line.")
    wrong = [str(line.item_id) for line in lines if line.document_type != document_type]
    if wrong:
        raise ValidationError(f"Lines do not belong to a {document_type} document.", item_ids=wrong)


def priced_line_fields(line, item, unit_price, tax_method=None, tax_rate=None, discount=None):
    """Price one line and return the rounded price plus the persisted line fields."""
    tax_method = item.tax_method if tax_method is None else tax_method
    tax_rate = item.tax_rate if tax_rate is None else tax_rate
    discount = line.discount if discount is None else discount
    price = price_line(line.quantity, unit_price, discount, tax_method, tax_rate).rounded()
    return price, {
        "item": item,
        "quantity": line.quantity,
        "unit_price": to_money(unit_price),
        "discount_percent": discount.value if isinstance(discount, Percent) else ZERO,
        "discount_value": price.discount_value,
        "discount_is_override": isinstance(discount, Absolute),
        "tax_method": tax_method,
        "tax_rate": tax_rate,
        "tax_value": price.tax_value,
        "net_value": price.net_value,
        "batch_no": line.batch_no,
    }


def frozen_discount(source_line, quantity):
    """Discount of an original document line, scaled to ``quantity`` when it was an absolute override."""
    if source_line.discount_is_override:
        if not source_line.quantity:
            return Absolute(ZERO)
        return Absolute(Decimal(source_line.discount_value) * Decimal(quantity) / Decimal(source_line.quantity))
    if source_line.discount_percent:
        return Percent(Decimal(source_line.discount_percent))
    return None


def ensure_available(ledger, projections, demand, reference=None):
    """Check aggregated outward demand per (item, store) and report every shortage at once."""
    if ledger.allows_negative_stock():
        return
    shortages = []
    for key, requested in demand.items():
        if requested <= ZERO:
            continue
        available = projections[key].available_quantity
        if requested > available:
            shortages.append(
                {
                    "item_id": key[0],
                    "store_id": key[1],
                    "available": str(available),
                    "requested": str(requested),
                }
            )
    if shortages:
        logger.warning(
            "document_rejected_insufficient_stock shortages=%s",
            len(shortages),
            extra={
                "reference_type": reference.type if reference else None,
                "item_id": shortages[0]["item_id"],
                "store_id": shortages[0]["store_id"],
            },
        )
        first = shortages[0]
        raise InsufficientStockError(
            f"Insufficient stock for {len(shortages)} line(s): item {first['item_id']} "
            f"requested {first['requested']}, available {first['available']}.",
            shortages=shortages,
        )


def create_document(model, store, user, totals, prefix=None, **header):
    return model.objects.create(
        number=next_document_number(store, prefix or model.number_prefix),
        store=store,
        created_by=user,
        **totals.as_fields(),
        **header,
    )


def apply_planned_movements(ledger, document, planned, projections, transaction_type, sign, user, store=None):
    store = store or document.store
    reference = Reference.for_document(document)
    movements = []
    for entry in planned:
        key = projection_key(entry.item.id, store.id)
        movements.append(
            ledger.apply_movement(
                entry.item.id,
                store.id,
                transaction_type,
                sign * entry.line.quantity,
                batch_no=entry.line.batch_no,
                reference=reference,
                unit_cost=entry.item.cost_price if entry.unit_cost is None else entry.unit_cost,
                created_by=user,
                projection=projections[key],
            )
        )
    return movements


def log_posted(document, movements):
    logger.info(
        "document_posted number=%s lines=%s",
        document.number,
        len(movements),
        extra={"reference_type": document.reference_type, "reference_id": str(document.id), "store_id": str(document.store_id)},
    )


# Opening stock and GRN


def _apply_master_price_updates(planned, update_cost_price, on_hand_before):
    on_hand = dict(on_hand_before)
    for entry in planned:
        item = entry.item
        if update_cost_price:
            update_item_cost(item, entry.line.quantity, entry.fields["unit_price"], on_hand[item.id])
        # A later line for the same item averages against the quantity received so far.
        on_hand[item.id] += entry.line.quantity
        update_item_prices(item, retail_price=entry.line.retail_price, wholesale_price=entry.line.wholesale_price)


def _plan_inward_priced(lines, items):
    planned = []
    for line in lines:
        item = items[line.item_id]
        unit_price = item.cost_price if line.unit_price is None else line.unit_price
        price, fields = priced_line_fields(line, item, unit_price)
        planned.append(PlannedLine(line=line, item=item, fields=fields, price=price, unit_cost=fields["unit_price"]))
    return planned


def _post_inward(model, line_model, parent_field, transaction_type, store, lines, ledger, user, update_cost_price, header):
    items = load_items([line.item_id for line in lines])
    planned = _plan_inward_priced(lines, items)

    with transaction.atomic():
        projections = ledger.lock_projections((entry.item.id, store.id) for entry in planned)
        on_hand_before = {entry.item.id: total_on_hand(entry.item) for entry in planned}
        document = create_document(
            model,
            store,
            user,
            summarize(entry.price for entry in planned),
            update_cost_price=update_cost_price,
            **header,
        )
        line_model.objects.bulk_create(line_model(**{parent_field: document}, **entry.fields) for entry in planned)
        movements = apply_planned_movements(ledger, document, planned, projections, transaction_type, 1, user)
        _apply_master_price_updates(planned, update_cost_price, on_hand_before)

    log_posted(document, movements)
    return PostingResult(document=document, movements=movements)


def _post_opening_stock(store, lines, supplier, update_cost_price, notes, user, ledger):
    require_document_type(lines, DocumentType.OPENING_STOCK)
    seen = set()
    duplicates = []
    for line in lines:
        if line.item_id in seen:
            duplicates.append(str(line.item_id))
        seen.add(line.item_id)
    if duplicates:
        raise ValidationError("An item can only appear once per opening stock entry.", item_ids=duplicates)

    return _post_inward(
        OpeningStockEntry,
        OpeningStockLine,
        "entry",
        TransactionType.OPENING_STOCK,
        store,
        lines,
        ledger,
        user,
        update_cost_price,
        {"supplier": supplier, "notes": notes},
    )


def post_opening_stock(store, lines, *, supplier=None, update_cost_price=False, notes="", user=None, ledger=None):
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(_post_opening_stock, store, lines, supplier, update_cost_price, notes, user, ledger)


def _post_grn(store, lines, supplier, supplier_invoice_no, update_cost_price, notes, user, ledger):
    require_document_type(lines, DocumentType.GRN)
    if supplier is None:
        raise ValidationError("A goods received note requires a supplier.")
    return _post_inward(
        GoodsReceivedNote,
        GoodsReceivedLine,
        "grn",
        TransactionType.GRN,
        store,
        lines,
        ledger,
        user,
        update_cost_price,
        {"supplier": supplier, "supplier_invoice_no": supplier_invoice_no, "notes": notes},
    )


def post_grn(store, lines, *, supplier, supplier_invoice_no="", update_cost_price=False, notes="", user=None, ledger=None):
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(
        _post_grn, store, lines, supplier, supplier_invoice_no, update_cost_price, notes, user, ledger
    )


# Returns


def returnable_quantities(source_lines, return_line_model, source_field):
    """Quantity still returnable per source line: original minus posted returns."""
    returned = dict(
        return_line_model.objects.filter(
            **{f"{source_field}__in": [line.id for line in source_lines]},
            **{f"{return_line_model.parent_field}__status": StockDocument.Status.POSTED},
        )
        .values(source_field)
        .annotate(total=Sum("quantity"))
        .values_list(source_field, "total")
    )
    return {line.id: Decimal(line.quantity) - Decimal(returned.get(line.id) or 0) for line in source_lines}


def plan_return_lines(lines, source_lines, remaining, items):
    """Price return lines with the frozen terms of the lines they give back."""
    over = []
    requested = defaultdict(Decimal)
    for line in lines:
        requested[line.source_line_id] += line.quantity
    for source_id, quantity in requested.items():
        if quantity > remaining[source_id]:
            over.append(
                {
                    "source_line_id": str(source_id),
                    "returnable": str(remaining[source_id]),
                    "requested": str(quantity),
                }
            )
    if over:
        raise ValidationError("Return quantity exceeds the quantity still returnable.", lines=over)

    planned = []
    for line in lines:
        source = source_lines[line.source_line_id]
        if source.item_id != line.item_id:
            raise ValidationError(
                "Return line item does not match the original line.",
                source_line_id=source.id,
                item_id=line.item_id,
            )
        unit_price = source.unit_price if line.unit_price is None else line.unit_price
        discount = line.discount if line.discount is not None else frozen_discount(source, line.quantity)
        price, fields = priced_line_fields(
            line,
            items[line.item_id],
            unit_price,
            tax_method=source.tax_method,
            tax_rate=source.tax_rate,
            discount=discount if discount is not None else Percent(ZERO),
        )
        planned.append(PlannedLine(line=line, item=items[line.item_id], fields=fields, price=price))
    return planned


def _post_purchase_return(grn, lines, reason, notes, user, ledger):
    require_document_type(lines, DocumentType.PURCHASE_RETURN)
    items = load_items([line.item_id for line in lines])
    store = grn.store

    with transaction.atomic():
        grn = GoodsReceivedNote.objects.select_for_update().get(pk=grn.pk)
        if grn.status != StockDocument.Status.POSTED:
            raise DocumentStateError("Cannot return against a cancelled GRN.", grn_id=grn.id, status=grn.status)
        source_lines = {line.id: line for line in grn.lines.all()}
        unknown = [str(line.source_line_id) for line in lines if line.source_line_id not in source_lines]
        if unknown:
            raise ValidationError("Return lines must reference lines of the selected GRN.", grn_line_ids=unknown)

        remaining = returnable_quantities(list(source_lines.values()), PurchaseReturnLine, "grn_line")
        planned = plan_return_lines(lines, source_lines, remaining, items)

        projections = ledger.lock_projections((entry.item.id, store.id) for entry in planned)
        demand = defaultdict(Decimal)
        for entry in planned:
            demand[projection_key(entry.item.id, store.id)] += entry.line.quantity
        ensure_available(ledger, projections, demand, Reference(type=PurchaseReturn.reference_type))

        document = create_document(
            PurchaseReturn,
            store,
            user,
            summarize(entry.price for entry in planned),
            grn=grn,
            reason=reason,
            notes=notes,
        )
        PurchaseReturnLine.objects.bulk_create(
            PurchaseReturnLine(purchase_return=document, grn_line_id=entry.line.source_line_id, **entry.fields)
            for entry in planned
        )
        movements = apply_planned_movements(ledger, document, planned, projections, TransactionType.PURCHASE_RETURN, -1, user)

    log_posted(document, movements)
    return PostingResult(document=document, movements=movements)


def post_purchase_return(grn, lines, *, reason="", notes="", user=None, ledger=None):
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(_post_purchase_return, grn, lines, reason, notes, user, ledger)


# Adjustments


def _post_adjustment(store, lines, notes, user, ledger):
    require_document_type(lines, DocumentType.ADJUSTMENT)
    items = load_items([line.item_id for line in lines])

    with transaction.atomic():
        projections = ledger.lock_projections((line.item_id, store.id) for line in lines)
        demand = defaultdict(Decimal)
        for line in lines:
            demand[projection_key(line.item_id, store.id)] -= line.quantity
        ensure_available(ledger, projections, demand, Reference(type=StockAdjustment.reference_type))

        total = sum((to_money(line.quantity * items[line.item_id].cost_price) for line in lines), ZERO)
        document = StockAdjustment.objects.create(
            number=next_document_number(store, StockAdjustment.number_prefix),
            store=store,
            created_by=user,
            subtotal=total,
            total=total,
            notes=notes,
        )
        reference = Reference.for_document(document)
        StockAdjustmentLine.objects.bulk_create(
            StockAdjustmentLine(
                adjustment=document,
                item=items[line.item_id],
                quantity=line.quantity,
                reason_code=line.reason_code,
                remarks=line.remarks,
                current_stock=projections[projection_key(line.item_id, store.id)].quantity_on_hand,
                unit_cost=items[line.item_id].cost_price,
                batch_no=line.batch_no,
            )
            for line in lines
        )

        movements = []
        # Inward lines first so a document that nets out never dips below zero midway.
        for line in sorted(lines, key=lambda line: line.quantity < ZERO):
            item = items[line.item_id]
            # Direction follows the sign of the entered quantity, never the reason code.
            transaction_type = TransactionType.ADJUSTMENT_IN if line.quantity > ZERO else TransactionType.ADJUSTMENT_OUT
            movements.append(
                ledger.apply_movement(
                    item.id,
                    store.id,
                    transaction_type,
                    line.quantity,
                    batch_no=line.batch_no,
                    reference=reference,
                    unit_cost=item.cost_price,
                    created_by=user,
                    projection=projections[projection_key(item.id, store.id)],
                )
            )

    log_posted(document, movements)
    return PostingResult(document=document, movements=movements)


def post_adjustment(store, lines, *, notes="", user=None, ledger=None):
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(_post_adjustment, store, lines, notes, user, ledger)


# Dispatch


def _post_dispatch(store, destination_store, lines, notes, user, ledger):
    require_document_type(lines, DocumentType.DISPATCH)
    if destination_store is None:
        raise ValidationError("A dispatch requires a destination store.")
    if store.pk == destination_store.pk:
        raise CrossStoreError(
            "Source and destination store must differ.",
            store_id=store.pk,
            destination_store_id=destination_store.pk,
        )
    items = load_items([line.item_id for line in lines])

    with transaction.atomic():
        keys = [(line.item_id, store.id) for line in lines] + [(line.item_id, destination_store.id) for line in lines]
        projections = ledger.lock_projections(keys)
        demand = defaultdict(Decimal)
        for line in lines:
            demand[projection_key(line.item_id, store.id)] += line.quantity
        ensure_available(ledger, projections, demand, Reference(type=Dispatch.reference_type))

        total = sum((to_money(line.quantity * items[line.item_id].cost_price) for line in lines), ZERO)
        document = Dispatch.objects.create(
            number=next_document_number(store, Dispatch.number_prefix),
            store=store,
            destination_store=destination_store,
            created_by=user,
            subtotal=total,
            total=total,
            notes=notes,
        )
        DispatchLine.objects.bulk_create(
            DispatchLine(
                dispatch=document,
                item=items[line.item_id],
                quantity=line.quantity,
                unit_cost=items[line.item_id].cost_price,
                line_value=to_money(line.quantity * items[line.item_id].cost_price),
                batch_no=line.batch_no,
            )
            for line in lines
        )
        planned = [PlannedLine(line=line, item=items[line.item_id], fields={}) for line in lines]
        movements = apply_planned_movements(ledger, document, planned, projections, TransactionType.TRANSFER_OUT, -1, user)
        movements += apply_planned_movements(
            ledger, document, planned, projections, TransactionType.TRANSFER_IN, 1, user, store=destination_store
        )

    log_posted(document, movements)
    return PostingResult(document=document, movements=movements)


def post_dispatch(store, destination_store, lines, *, notes="", user=None, ledger=None):
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(_post_dispatch, store, destination_store, lines, notes, user, ledger)


# Cancellation


def reverse_document(document, user, ledger):
    model = type(document)
    with transaction.atomic():
        document = model.objects.select_for_update().get(pk=document.pk)
        if document.status != StockDocument.Status.POSTED:
            raise DocumentStateError(
                f"{document.number} is already {document.status}.",
                document_id=document.id,
                status=document.status,
            )
        has_active_returns = getattr(document, "has_active_returns", None)
        if has_active_returns is not None and has_active_returns():
            raise DocumentStateError(
                f"{document.number} has posted returns; cancel them first.",
                document_id=document.id,
            )

        originals = list(
            document.movements()
            .filter(reversed_by__isnull=True)
            .exclude(transaction_type__endswith=StockMovement.REVERSAL_SUFFIX)
            .order_by("created_at", "sequence")
        )
        # Outward originals first: their reversals add stock back before anything is taken out.
        originals.sort(key=lambda movement: movement.quantity > ZERO)
        projections = ledger.lock_projections((movement.item_id, movement.store_id) for movement in originals)
        demand = defaultdict(Decimal)
        for movement in originals:
            demand[projection_key(movement.item_id, movement.store_id)] += movement.quantity
        ensure_available(ledger, projections, demand, Reference.for_document(document))

        reversals = [
            ledger.reverse_movement(
                movement.id,
                created_by=user,
                projection=projections[projection_key(movement.item_id, movement.store_id)],
                document_cancel=True,
            )
            for movement in originals
        ]
        document.status = StockDocument.Status.CANCELLED
        document.cancelled_at = timezone.now()
        document.save(update_fields=["status", "cancelled_at", "updated_at"])

    logger.info(
        "document_cancelled number=%s reversals=%s",
        document.number,
        len(reversals),
        extra={"reference_type": document.reference_type, "reference_id": str(document.id)},
    )
    return PostingResult(document=document, movements=reversals)


def cancel_document(document, *, user=None, ledger=None):
    """Reverse every movement of ``document`` and mark it cancelled, all or nothing."""
    ledger = ledger or get_stock_ledger()
    return run_with_conflict_retry(reverse_document, document, user, ledger)
