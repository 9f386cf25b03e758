import uuid
from decimal import Decimal

from django.conf import settings
from django.db.models import Sum

from common.utils import to_money
from inventory.exceptions import ValidationError
from inventory.models import Item, StoreItemStock


def total_on_hand(item):
    return StoreItemStock.objects.filter(item=item).aggregate(total=Sum("quantity_on_hand"))["total"] or Decimal("0")


def update_item_cost(item, incoming_qty, incoming_unit_cost, current_stock_qty=Decimal("0")):
    """
    Update item cost using either last cost or weighted average costing.
    Enable weighted average by setting INVENTORY_WEIGHTED_AVERAGE_COST=True.
    """
    incoming_qty = Decimal(incoming_qty or 0)
    incoming_unit_cost = Decimal(incoming_unit_cost or 0)
    current_stock_qty = max(Decimal(current_stock_qty or 0), Decimal("0"))

    if incoming_qty <= 0:
        return item.cost_price

    use_weighted_average = getattr(settings, "INVENTORY_WEIGHTED_AVERAGE_COST", False)
    current_cost = Decimal(item.cost_price or 0)

    if use_weighted_average:
        total_existing_cost = current_stock_qty * current_cost
        total_incoming_cost = incoming_qty * incoming_unit_cost
        total_qty = current_stock_qty + incoming_qty
        new_cost = incoming_unit_cost if total_qty <= 0 else (total_existing_cost + total_incoming_cost) / total_qty
    else:
        new_cost = incoming_unit_cost

    item.cost_price = to_money(new_cost)
    item.save(update_fields=["cost_price", "updated_at"])
    return item.cost_price


def update_item_prices(item, *, cost_price=None, retail_price=None, wholesale_price=None):
    changed = []
    for field, value in (("cost_price", cost_price), ("retail_price", retail_price), ("wholesale_price", wholesale_price)):
        if value is None:
            continue
        setattr(item, field, to_money(value))
        changed.append(field)
    if changed:
        item.save(update_fields=[*changed, "updated_at"])
    return item


def load_items(item_ids):
    wanted = {uuid.UUID(str(item_id)) for item_id in item_ids}
    items = Item.objects.in_bulk(wanted)
    missing = sorted(str(item_id) for item_id in wanted if item_id not in items)
    if missing:
        raise ValidationError("Unknown item(s).", item_ids=missing)
    return items
