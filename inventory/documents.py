"""Typed document lines handed from the API layer to the movement policies."""

import uuid
from dataclasses import dataclass
from decimal import Decimal

from django.db import models

from common.utils import to_quantity
from inventory.exceptions import ValidationError
from inventory.pricing import ZERO, Absolute, Percent, as_decimal


class DocumentType(models.TextChoices):
    OPENING_STOCK = "opening_stock", "Opening stock"
    GRN = "grn", "Goods received note"
    RETAIL_SALE = "retail_sale", "Retail sale"
    WHOLESALE_SALE = "wholesale_sale", "Wholesale sale"
    SALES_RETURN = "sales_return", "Sales return"
    PURCHASE_RETURN = "purchase_return", "Purchase return"
    ADJUSTMENT = "adjustment", "Stock adjustment"
    DISPATCH = "dispatch", "Dispatch"
    QUOTATION = "quotation", "Quotation"


class AdjustmentReason(models.TextChoices):
    DAMAGED = "damaged", "Damaged"
    EXPIRED = "expired", "Expired"
    THEFT_LOSS = "theft_loss", "Theft / loss"
    AUDIT_VARIANCE = "audit_variance", "Audit variance"
    RETURNED_TO_SUPPLIER = "returned_to_supplier", "Returned to supplier"
    PROMOTIONAL_GIVEAWAY = "promotional_giveaway", "Promotional giveaway"
    OTHER = "other", "Other"


INWARD_PRICED_TYPES = {DocumentType.OPENING_STOCK, DocumentType.GRN}
SALE_TYPES = {DocumentType.RETAIL_SALE, DocumentType.WHOLESALE_SALE}
RETURN_TYPES = {DocumentType.SALES_RETURN, DocumentType.PURCHASE_RETURN}
UNPRICED_TYPES = {DocumentType.ADJUSTMENT, DocumentType.DISPATCH}


@dataclass(frozen=True)
class DocumentLine:
    """One line of a stock document, discriminated by ``document_type``.

    Adjustments carry a signed quantity and a reason code; returns carry the
    id of the sale/GRN line they give back; opening stock and GRN lines may
    carry new selling prices for the item master.
    """

    document_type: str
    item_id: uuid.UUID
    quantity: Decimal
    unit_price: Decimal | None = None
    discount: Percent | Absolute | None = None
    batch_no: str = ""
    source_line_id: uuid.UUID | None = None
    reason_code: str = ""
    remarks: str = ""
    retail_price: Decimal | None = None
    wholesale_price: Decimal | None = None

    def __post_init__(self):
        if self.document_type not in DocumentType.values:
            raise ValidationError(f"Unknown document type '{self.document_type}'.", document_type=self.document_type)

        for field in ("item_id", "source_line_id"):
            value = getattr(self, field)
            if value is None or isinstance(value, uuid.UUID):
                continue
            try:
                object.__setattr__(self, field, uuid.UUID(str(value)))
            except ValueError:
                raise ValidationError(f"{field} must be a UUID.", **{field: value}) from None
        if self.item_id is None:
            raise ValidationError("item_id is required.")

        quantity = to_quantity(as_decimal(self.quantity, "quantity"))
        object.__setattr__(self, "quantity", quantity)
        if self.document_type == DocumentType.ADJUSTMENT:
            if quantity == ZERO:
                raise ValidationError("Adjustment quantity must not be zero.", item_id=self.item_id, quantity=quantity)
            if self.reason_code not in AdjustmentReason.values:
                raise ValidationError(
                    "Adjustment requires a valid reason code.",
                    item_id=self.item_id,
                    reason_code=self.reason_code,
                )
        elif quantity <= ZERO:
            raise ValidationError("quantity must be greater than 0.", item_id=self.item_id, quantity=quantity)

        for field in ("unit_price", "retail_price", "wholesale_price"):
            value = getattr(self, field)
            if value is None:
                continue
            value = as_decimal(value, field)
            if value < ZERO:
                raise ValidationError(f"{field} must not be negative.", item_id=self.item_id, **{field: value})
            object.__setattr__(self, field, value)

        if self.document_type in RETURN_TYPES and self.source_line_id is None:
            raise ValidationError("Return lines must reference the original document line.", item_id=self.item_id)
        if self.document_type in UNPRICED_TYPES and self.discount is not None:
            raise ValidationError("Discounts do not apply to this document type.", document_type=self.document_type)
        if self.document_type not in INWARD_PRICED_TYPES and (
            self.retail_price is not None or self.wholesale_price is not None
        ):
            raise ValidationError(
                "Selling prices can only be updated from opening stock or GRN lines.",
                document_type=self.document_type,
            )

    @property
    def is_inward_priced(self):
        return self.document_type in INWARD_PRICED_TYPES


def discount_from_payload(payload):
    """An explicit ``discount_value`` wins over ``discount_percent``."""
    if payload.get("discount_value") is not None:
        return Absolute(as_decimal(payload["discount_value"], "discount_value"))
    if payload.get("discount_percent") is not None:
        return Percent(as_decimal(payload["discount_percent"], "discount_percent"))
    return None


def line_from_payload(document_type, payload):
    item = payload["item"]
    source_line = payload.get("source_line")
    return DocumentLine(
        document_type=document_type,
        item_id=getattr(item, "pk", item),
        quantity=payload["quantity"],
        unit_price=payload.get("unit_price"),
        discount=None if document_type in UNPRICED_TYPES else discount_from_payload(payload),
        batch_no=payload.get("batch_no") or "",
        source_line_id=getattr(source_line, "pk", source_line),
        reason_code=payload.get("reason_code") or "",
        remarks=payload.get("remarks") or "",
        retail_price=payload.get("retail_price"),
        wholesale_price=payload.get("wholesale_price"),
    )
