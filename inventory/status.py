from decimal import Decimal

from django.conf import settings
from django.db import models

from common.utils import to_money
from inventory.models import Item, StoreItemStock


class StockStatus(models.TextChoices):
    OK = "OK", "OK"
    LOW = "LOW", "Low"
    CRITICAL = "CRITICAL", "Critical"
    OUT_OF_STOCK = "OUT_OF_STOCK", "Out of stock"


def critical_ratio():
    return Decimal(str(getattr(settings, "STOCK_CRITICAL_RATIO", "0.5")))


def classify(quantity_on_hand, reorder_level, ratio=None):
    """
    OUT_OF_STOCK at or below zero, CRITICAL up to ``reorder_level * ratio``,
    LOW up to ``reorder_level``, OK above it. ``ratio`` defaults to
    STOCK_CRITICAL_RATIO (0.5).
    """
    quantity_on_hand = Decimal(quantity_on_hand or 0)
    reorder_level = Decimal(reorder_level or 0)
    ratio = critical_ratio() if ratio is None else Decimal(ratio)

    if quantity_on_hand <= 0:
        return StockStatus.OUT_OF_STOCK
    if quantity_on_hand <= reorder_level * ratio:
        return StockStatus.CRITICAL
    if quantity_on_hand <= reorder_level:
        return StockStatus.LOW
    return StockStatus.OK


def valuation(quantity_on_hand, cost_price, retail_price):
    quantity_on_hand = Decimal(quantity_on_hand or 0)
    cost_valuation = to_money(quantity_on_hand * Decimal(cost_price or 0))
    retail_valuation = to_money(quantity_on_hand * Decimal(retail_price or 0))
    return {
        "cost_valuation": cost_valuation,
        "retail_valuation": retail_valuation,
        "profit_margin_total": retail_valuation - cost_valuation,
    }


def build_stock_report(store, status=None, search=None, include_zero=True, ratio=None):
    """Current stock for every active item at ``store`` with per-status counts and valuation totals.

    Items that never moved at the store are reported with zero on hand.
    """
    ratio = critical_ratio() if ratio is None else Decimal(ratio)
    items = Item.objects.filter(is_active=True).order_by("code")
    if search:
        items = items.filter(models.Q(code__icontains=search) | models.Q(name__icontains=search))
    projections = {
        projection.item_id: projection
        for projection in StoreItemStock.objects.filter(store=store, item__in=items)
    }

    rows = []
    by_status = {choice: 0 for choice in StockStatus.values}
    summary = {
        "item_count": 0,
        "total_quantity": Decimal("0"),
        "cost_valuation": Decimal("0.00"),
        "retail_valuation": Decimal("0.00"),
        "profit_margin_total": Decimal("0.00"),
    }

    for item in items:
        projection = projections.get(item.id)
        on_hand = Decimal(projection.quantity_on_hand) if projection else Decimal("0")
        reserved = Decimal(projection.reserved_quantity) if projection else Decimal("0")
        if not include_zero and projection is None:
            continue
        item_status = classify(on_hand, item.reorder_level, ratio)
        by_status[item_status] += 1
        if status and item_status != status:
            continue

        values = valuation(on_hand, item.cost_price, item.retail_price)
        rows.append(
            {
                "item_id": item.id,
                "item_code": item.code,
                "item_name": item.name,
                "unit_of_measure": item.unit_of_measure,
                "quantity_on_hand": on_hand,
                "reserved_quantity": reserved,
                "available_quantity": on_hand - reserved,
                "reorder_level": item.reorder_level,
                "status": item_status,
                "cost_price": item.cost_price,
                "retail_price": item.retail_price,
                **values,
            }
        )
        summary["item_count"] += 1
        summary["total_quantity"] += on_hand
        for key in ("cost_valuation", "retail_valuation", "profit_margin_total"):
            summary[key] += values[key]

    return {
        "store_id": store.id,
        "store_code": store.code,
        "summary": summary,
        "by_status": by_status,
        "rows": rows,
    }
