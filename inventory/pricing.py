"""Line-item pricing shared by every stock document.

``price_line`` is pure: it never rounds and never touches the database.
Rounding to money precision happens once, when a priced line is persisted
(``LinePrice.rounded``), so document totals are sums of rounded line values.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from django.db import models

from common.utils import to_money
from inventory.exceptions import ValidationError

ZERO = Decimal("0")
HUNDRED = Decimal("100")


class TaxMethod(models.TextChoices):
    EXCLUSIVE = "exclusive", "Exclusive"
    INCLUSIVE = "inclusive", "Inclusive"
    NONE = "none", "None"


@dataclass(frozen=True)
class Percent:
    value: Decimal


@dataclass(frozen=True)
class Absolute:
    """Explicit discount amount for the whole line, used verbatim."""

    value: Decimal


@dataclass(frozen=True)
class LinePrice:
    gross: Decimal
    discount_value: Decimal
    after_discount: Decimal
    tax_value: Decimal
    net_value: Decimal

    def rounded(self):
        return LinePrice(
            gross=to_money(self.gross),
            discount_value=to_money(self.discount_value),
            after_discount=to_money(self.after_discount),
            tax_value=to_money(self.tax_value),
            net_value=to_money(self.net_value),
        )


@dataclass(frozen=True)
class DocumentTotals:
    subtotal: Decimal = ZERO
    discount_total: Decimal = ZERO
    tax_total: Decimal = ZERO
    total: Decimal = ZERO

    def as_fields(self):
        return {
            "subtotal": self.subtotal,
            "discount_total": self.discount_total,
            "tax_total": self.tax_total,
            "total": self.total,
        }


def as_decimal(value, field):
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"{field} must be a number.", field=field, value=value) from None
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number.", field=field, value=value)
    return result


def resolve_discount(discount, gross):
    """Resolve a ``Percent``/``Absolute`` discount to an amount off ``gross``.

    A bare number is read as a percentage.
    """
    if discount is None:
        return ZERO
    if isinstance(discount, Absolute):
        amount = as_decimal(discount.value, "discount_value")
        if amount < ZERO or amount > gross:
            raise ValidationError(
                "discount_value must be between 0 and the line gross amount.",
                discount_value=amount,
                gross=gross,
            )
        return amount

    percent = as_decimal(discount.value if isinstance(discount, Percent) else discount, "discount_percent")
    if percent < ZERO or percent > HUNDRED:
        raise ValidationError("discount_percent must be between 0 and 100.", discount_percent=percent)
    return gross * percent / HUNDRED


def price_line(quantity, unit_price, discount=None, tax_method=TaxMethod.NONE, tax_rate=ZERO):
    quantity = as_decimal(quantity, "quantity")
    unit_price = as_decimal(unit_price, "unit_price")
    tax_rate = as_decimal(tax_rate, "tax_rate")

    if quantity <= ZERO:
        raise ValidationError("quantity must be greater than 0.", quantity=quantity)
    if unit_price < ZERO:
        raise ValidationError("unit_price must not be negative.", unit_price=unit_price)
    if tax_rate < ZERO or tax_rate > HUNDRED:
        raise ValidationError("tax_rate must be between 0 and 100.", tax_rate=tax_rate)
    if tax_method not in TaxMethod.values:
        raise ValidationError(f"Unknown tax method '{tax_method}'.", tax_method=tax_method)

    gross = quantity * unit_price
    discount_value = resolve_discount(discount, gross)
    after_discount = gross - discount_value

    if tax_method == TaxMethod.EXCLUSIVE:
        tax_value = after_discount * tax_rate / HUNDRED
        net_value = after_discount + tax_value
    elif tax_method == TaxMethod.INCLUSIVE:
        tax_value = after_discount * tax_rate / (HUNDRED + tax_rate)
        net_value = after_discount
    else:
        tax_value = ZERO
        net_value = after_discount

    return LinePrice(
        gross=gross,
        discount_value=discount_value,
        after_discount=after_discount,
        tax_value=tax_value,
        net_value=net_value,
    )


def summarize(prices):
    """Sum already-rounded line prices into document totals."""
    totals = DocumentTotals()
    for price in prices:
        totals = DocumentTotals(
            subtotal=totals.subtotal + price.gross,
            discount_total=totals.discount_total + price.discount_value,
            tax_total=totals.tax_total + price.tax_value,
            total=totals.total + price.net_value,
        )
    return totals
