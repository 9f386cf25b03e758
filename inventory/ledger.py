"""Stock ledger: the only writer of ``StockMovement`` and ``StoreItemStock``.

Every quantity change appends one movement and moves the projection in the
same transaction. The projection row is locked with ``select_for_update`` and
then written with a conditional update on ``version``/``reserved_quantity``;
a lost race surfaces as ``ConcurrencyConflictError``.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from django.apps import apps
from django.conf import settings
from django.db import transaction
from django.db.models import F, Sum
from django.utils import timezone

from common.utils import to_quantity
from inventory.exceptions import ConcurrencyConflictError, DocumentStateError, InsufficientStockError, ValidationError
from inventory.models import StockDocument, StockMovement, StoreItemStock
from inventory.pricing import ZERO, as_decimal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reference:
    type: str = ""
    id: uuid.UUID | None = None

    @classmethod
    def for_document(cls, document):
        return cls(type=document.reference_type, id=document.id)


@dataclass(frozen=True)
class LedgerDivergence:
    item_id: uuid.UUID
    store_id: uuid.UUID
    quantity_on_hand: Decimal
    replayed_quantity: Decimal
    last_running_balance: Decimal | None


def projection_key(item_id, store_id):
    return (str(item_id), str(store_id))


def owning_document(movement):
    """The stock document ``movement`` was written for, or None for a bare ledger entry."""
    if not movement.reference_type or movement.reference_id is None:
        return None
    for model in apps.get_models():
        if issubclass(model, StockDocument) and model.reference_type == movement.reference_type:
            return model.objects.filter(pk=movement.reference_id).first()
    return None


class StockLedger:
    def __init__(self, settings_cache=None, allow_negative=None):
        self.settings_cache = settings_cache
        self.allow_negative = allow_negative

    def allows_negative_stock(self):
        if self.allow_negative is not None:
            return self.allow_negative
        default = getattr(settings, "STOCK_ALLOW_NEGATIVE", False)
        if self.settings_cache is None:
            return default
        return self.settings_cache.get_bool("allow_negative_stock", default)

    # Reads

    def get_projection(self, item_id, store_id):
        """Current projection; an unsaved zero row when nothing has moved yet."""
        projection = StoreItemStock.objects.filter(item_id=item_id, store_id=store_id).first()
        if projection is None:
            projection = StoreItemStock(item_id=item_id, store_id=store_id)
        return projection

    def get_history(self, item_id, store_id, since=None):
        queryset = StockMovement.objects.filter(item_id=item_id, store_id=store_id).order_by("sequence")
        if since is not None:
            queryset = queryset.filter(created_at__gte=since)
        yield from queryset.iterator(chunk_size=500)

    def replay(self, item_id, store_id):
        total = StockMovement.objects.filter(item_id=item_id, store_id=store_id).aggregate(total=Sum("quantity"))["total"]
        return total or ZERO

    def verify(self, projections=None):
        """Yield a ``LedgerDivergence`` for every projection its ledger does not replay to."""
        if projections is None:
            projections = StoreItemStock.objects.order_by("store_id", "item_id")
        for projection in projections.iterator():
            replayed = self.replay(projection.item_id, projection.store_id)
            last = (
                StockMovement.objects.filter(item_id=projection.item_id, store_id=projection.store_id)
                .order_by("-sequence")
                .values_list("running_balance", flat=True)
                .first()
            )
            on_hand = Decimal(projection.quantity_on_hand)
            if replayed != on_hand or (last is not None and last != on_hand) or (last is None and on_hand != ZERO):
                yield LedgerDivergence(
                    item_id=projection.item_id,
                    store_id=projection.store_id,
                    quantity_on_hand=on_hand,
                    replayed_quantity=replayed,
                    last_running_balance=last,
                )

    # Writes

    def lock_projection(self, item_id, store_id):
        projection, _ = StoreItemStock.objects.get_or_create(item_id=item_id, store_id=store_id)
        return StoreItemStock.objects.select_for_update().get(pk=projection.pk)

    def lock_projections(self, keys):
        """Lock every (item_id, store_id) pair in a stable order; must run inside ``transaction.atomic``."""
        locked = {}
        for item_id, store_id in sorted({projection_key(item_id, store_id) for item_id, store_id in keys}):
            locked[(item_id, store_id)] = self.lock_projection(item_id, store_id)
        return locked

    def _conditional_update(self, projection, **changes):
        updated = StoreItemStock.objects.filter(
            pk=projection.pk,
            version=projection.version,
            reserved_quantity=projection.reserved_quantity,
        ).update(updated_at=timezone.now(), **changes)
        if updated != 1:
            logger.warning(
                "stock_conflict",
                extra={"item_id": str(projection.item_id), "store_id": str(projection.store_id)},
            )
            raise ConcurrencyConflictError(
                item_id=projection.item_id,
                store_id=projection.store_id,
                expected_version=projection.version,
            )

    def apply_movement(
        self,
        item_id,
        store_id,
        transaction_type,
        quantity_delta,
        batch_no="",
        reference=None,
        unit_cost=None,
        created_by=None,
        reverses=None,
        projection=None,
    ):
        quantity = to_quantity(as_decimal(quantity_delta, "quantity"))
        if quantity == ZERO:
            raise ValidationError("Movement quantity must not be zero.", item_id=item_id, store_id=store_id)
        transaction_type = StockMovement.TransactionType(transaction_type)
        reference = reference or Reference()

        with transaction.atomic():
            if projection is None:
                projection = self.lock_projection(item_id, store_id)

            on_hand = Decimal(projection.quantity_on_hand)
            available = projection.available_quantity
            if quantity < ZERO and available + quantity < ZERO and not self.allows_negative_stock():
                logger.warning(
                    "stock_movement_rejected",
                    extra={
                        "item_id": str(item_id),
                        "store_id": str(store_id),
                        "transaction_type": transaction_type.value,
                        "quantity": str(quantity),
                        "reference_type": reference.type,
                        "reference_id": str(reference.id) if reference.id else None,
                    },
                )
                raise InsufficientStockError(
                    f"Insufficient stock: requested {-quantity}, available {available}.",
                    item_id=item_id,
                    store_id=store_id,
                    quantity_on_hand=on_hand,
                    available=available,
                    requested=-quantity,
                )

            new_on_hand = on_hand + quantity
            sequence = projection.version + 1
            self._conditional_update(projection, quantity_on_hand=new_on_hand, version=F("version") + 1)
            projection.quantity_on_hand = new_on_hand
            projection.version = sequence

            movement = StockMovement.objects.create(
                item_id=item_id,
                store_id=store_id,
                transaction_type=transaction_type,
                quantity=quantity,
                batch_no=batch_no or "",
                reference_type=reference.type,
                reference_id=reference.id,
                sequence=sequence,
                running_balance=new_on_hand,
                unit_cost=unit_cost,
                reverses=reverses,
                created_by=created_by,
            )

        logger.info(
            "stock_movement_applied",
            extra={
                "item_id": str(item_id),
                "store_id": str(store_id),
                "transaction_type": transaction_type.value,
                "quantity": str(quantity),
                "running_balance": str(new_on_hand),
                "reference_type": reference.type,
                "reference_id": str(reference.id) if reference.id else None,
            },
        )
        return movement

    def reverse_movement(self, movement_id, reference=None, created_by=None, projection=None, document_cancel=False):
        """Append the compensating movement for ``movement_id``.

        Movements of a posted document are only reversed by cancelling that
        document (``document_cancel=True``), so its legs and return limits stay
        consistent.
        """
        with transaction.atomic():
            original = StockMovement.objects.select_for_update().filter(pk=movement_id).first()
            if original is None:
                raise ValidationError("Stock movement not found.", movement_id=movement_id)
            if original.is_reversal:
                raise DocumentStateError("A reversal movement cannot be reversed.", movement_id=original.id)
            if StockMovement.objects.filter(reverses=original).exists():
                raise DocumentStateError("Stock movement has already been reversed.", movement_id=original.id)
            if not document_cancel:
                document = owning_document(original)
                if document is not None and document.status == StockDocument.Status.POSTED:
                    raise DocumentStateError(
                        f"Stock movement belongs to posted {document.number}; cancel the document instead.",
                        movement_id=original.id,
                        document_id=document.id,
                        document_number=document.number,
                    )

            movement = self.apply_movement(
                original.item_id,
                original.store_id,
                StockMovement.reversal_type_for(original.transaction_type),
                -original.quantity,
                batch_no=original.batch_no,
                reference=reference or Reference(type=original.reference_type, id=original.reference_id),
                unit_cost=original.unit_cost,
                created_by=created_by,
                reverses=original,
                projection=projection,
            )

        logger.info(
            "stock_movement_reversed",
            extra={
                "item_id": str(original.item_id),
                "store_id": str(original.store_id),
                "transaction_type": movement.transaction_type,
                "quantity": str(movement.quantity),
                "reference_type": original.reference_type,
                "reference_id": str(original.reference_id) if original.reference_id else None,
            },
        )
        return movement

    def reserve(self, item_id, store_id, quantity, projection=None):
        quantity = to_quantity(as_decimal(quantity, "quantity"))
        if quantity <= ZERO:
            raise ValidationError("Reserved quantity must be greater than 0.", item_id=item_id, quantity=quantity)

        with transaction.atomic():
            if projection is None:
                projection = self.lock_projection(item_id, store_id)
            available = projection.available_quantity
            if available < quantity:
                raise InsufficientStockError(
                    f"Cannot reserve {quantity}: only {available} available.",
                    item_id=item_id,
                    store_id=store_id,
                    available=available,
                    requested=quantity,
                )
            reserved = Decimal(projection.reserved_quantity) + quantity
            self._conditional_update(projection, reserved_quantity=reserved)
            projection.reserved_quantity = reserved
        return projection

    def release(self, item_id, store_id, quantity, projection=None):
        quantity = to_quantity(as_decimal(quantity, "quantity"))
        if quantity <= ZERO:
            return projection

        with transaction.atomic():
            if projection is None:
                projection = self.lock_projection(item_id, store_id)
            current = Decimal(projection.reserved_quantity)
            if quantity > current:
                raise ValidationError(
                    f"Cannot release {quantity}: only {current} reserved.",
                    item_id=item_id,
                    store_id=store_id,
                    reserved=current,
                    requested=quantity,
                )
            self._conditional_update(projection, reserved_quantity=current - quantity)
            projection.reserved_quantity = current - quantity
        return projection


def get_stock_ledger():
    from core.apps import get_settings_cache

    return StockLedger(settings_cache=get_settings_cache())


def run_with_conflict_retry(fn, *args, retries=None, **kwargs):
    """Run ``fn``, retrying it as a whole when it loses an optimistic stock race.

    ``fn`` must open its own ``transaction.atomic`` block so a failed attempt
    is rolled back before the next one starts.
    """
    if retries is None:
        retries = getattr(settings, "STOCK_CONFLICT_RETRIES", 1)
    attempt = 0
    while True:
        try:
            return fn(*args, **kwargs)
        except ConcurrencyConflictError:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning("stock_conflict_retry", extra={"attempt": attempt})
