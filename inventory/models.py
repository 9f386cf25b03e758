import uuid
from decimal import Decimal

from django.db import models

from core.models import Store
from inventory.documents import AdjustmentReason
from inventory.pricing import TaxMethod


class Supplier(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=64, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["is_active"], name="supplier_active_idx")]


class Item(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    unit_of_measure = models.CharField(max_length=32, default="pcs")
    cost_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    retail_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    wholesale_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_method = models.CharField(max_length=16, choices=TaxMethod.choices, default=TaxMethod.NONE)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    reorder_level = models.PositiveIntegerField(default=0)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["is_active"], name="item_active_idx")]

    def __str__(self):
        return f"{self.code} {self.name}"


class StoreItemStock(models.Model):
    """Current-state projection of the stock ledger for one (item, store).

    Written only by ``inventory.ledger.StockLedger``. ``version`` increases by
    one on every change and equals the ``sequence`` of the latest movement.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name="stock_levels")
    store = models.ForeignKey(Store, on_delete=models.PROTECT, related_name="stock_levels")
    quantity_on_hand = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    reserved_quantity = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    version = models.PositiveBigIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["item", "store"], name="uniq_stock_item_store"),
        ]
        indexes = [models.Index(fields=["store", "item"], name="stock_store_item_idx")]

    @property
    def available_quantity(self):
        return Decimal(self.quantity_on_hand) - Decimal(self.reserved_quantity)


class StockMovement(models.Model):
    """Append-only ledger row. Never updated or deleted once written."""

    class TransactionType(models.TextChoices):
        OPENING_STOCK = "opening_stock", "Opening stock"
        GRN = "grn", "Goods received"
        SALE = "sale", "Sale"
        SALES_RETURN = "sales_return", "Sales return"
        PURCHASE_RETURN = "purchase_return", "Purchase return"
        ADJUSTMENT_IN = "adjustment_in", "Adjustment in"
        ADJUSTMENT_OUT = "adjustment_out", "Adjustment out"
        TRANSFER_IN = "transfer_in", "Transfer in"
        TRANSFER_OUT = "transfer_out", "Transfer out"
        OPENING_STOCK_REVERSAL = "opening_stock_reversal", "Opening stock reversal"
        GRN_REVERSAL = "grn_reversal", "Goods received reversal"
        SALE_REVERSAL = "sale_reversal", "Sale reversal"
        SALES_RETURN_REVERSAL = "sales_return_reversal", "Sales return reversal"
        PURCHASE_RETURN_REVERSAL = "purchase_return_reversal", "Purchase return reversal"
        ADJUSTMENT_IN_REVERSAL = "adjustment_in_reversal", "Adjustment in reversal"
        ADJUSTMENT_OUT_REVERSAL = "adjustment_out_reversal", "Adjustment out reversal"
        TRANSFER_IN_REVERSAL = "transfer_in_reversal", "Transfer in reversal"
        TRANSFER_OUT_REVERSAL = "transfer_out_reversal", "Transfer out reversal"

    REVERSAL_SUFFIX = "_reversal"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name="movements")
    store = models.ForeignKey(Store, on_delete=models.PROTECT, related_name="movements")
    transaction_type = models.CharField(max_length=32, choices=TransactionType.choices)
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    batch_no = models.CharField(max_length=64, blank=True, default="")
    reference_type = models.CharField(max_length=64, blank=True, default="")
    reference_id = models.UUIDField(null=True, blank=True)
    sequence = models.PositiveBigIntegerField()
    running_balance = models.DecimalField(max_digits=14, decimal_places=3)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    reverses = models.OneToOneField(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="reversed_by",
    )
    created_by = models.ForeignKey("core.User", on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["sequence"]
        constraints = [
            models.UniqueConstraint(fields=["item", "store", "sequence"], name="uniq_movement_item_store_sequence"),
        ]
        indexes = [
            models.Index(fields=["item", "store", "created_at"], name="movement_item_store_time_idx"),
            models.Index(fields=["store", "created_at"], name="movement_store_time_idx"),
            models.Index(fields=["reference_type", "reference_id"], name="movement_reference_idx"),
        ]

    @property
    def is_reversal(self):
        return self.transaction_type.endswith(self.REVERSAL_SUFFIX)

    @classmethod
    def reversal_type_for(cls, transaction_type):
        return cls.TransactionType(f"{transaction_type}{cls.REVERSAL_SUFFIX}")

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError("Stock movements are append-only and cannot be modified.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError("Stock movements are append-only and cannot be deleted.")


class StockDocument(models.Model):
    """Common header of every document that moves stock."""

    class Status(models.TextChoices):
        POSTED = "posted", "Posted"
        CANCELLED = "cancelled", "Cancelled"

    reference_type = None
    number_prefix = None

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    number = models.CharField(max_length=64, unique=True)
    store = models.ForeignKey(Store, on_delete=models.PROTECT, related_name="+")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.POSTED)
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    discount_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    tax_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey("core.User", on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True

    def movements(self):
        return StockMovement.objects.filter(reference_type=self.reference_type, reference_id=self.id)


class PricedLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name="+")
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    discount_value = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount_is_override = models.BooleanField(default=False)
    tax_method = models.CharField(max_length=16, choices=TaxMethod.choices, default=TaxMethod.NONE)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    tax_value = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    net_value = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    batch_no = models.CharField(max_length=64, blank=True, default="")

    class Meta:
        abstract = True


class DocumentSequence(models.Model):
    """Last issued document number per (store, prefix)."""

    store = models.ForeignKey(Store, on_delete=models.PROTECT)
    prefix = models.CharField(max_length=16)
    last_value = models.PositiveIntegerField(default=0)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["store", "prefix"], name="uniq_document_sequence_store_prefix"),
        ]


class OpeningStockEntry(StockDocument):
    reference_type = "inventory.opening_stock"
    number_prefix = "OPSTK"

    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, null=True, blank=True)
    update_cost_price = models.BooleanField(default=False)


class OpeningStockLine(PricedLine):
    entry = models.ForeignKey(OpeningStockEntry, on_delete=models.CASCADE, related_name="lines")


class GoodsReceivedNote(StockDocument):
    reference_type = "inventory.grn"
    number_prefix = "GRN"

    supplier = models.ForeignKey(Supplier, on_delete=models.PROTECT, related_name="grns")
    supplier_invoice_no = models.CharField(max_length=64, blank=True, default="")
    update_cost_price = models.BooleanField(default=False)

    def has_active_returns(self):
        return self.returns.filter(status=StockDocument.Status.POSTED).exists()


class GoodsReceivedLine(PricedLine):
    grn = models.ForeignKey(GoodsReceivedNote, on_delete=models.CASCADE, related_name="lines")


class PurchaseReturn(StockDocument):
    reference_type = "inventory.purchase_return"
    number_prefix = "PRET"

    grn = models.ForeignKey(GoodsReceivedNote, on_delete=models.PROTECT, related_name="returns")
    reason = models.TextField(blank=True, default="")


class PurchaseReturnLine(PricedLine):
    parent_field = "purchase_return"

    purchase_return = models.ForeignKey(PurchaseReturn, on_delete=models.CASCADE, related_name="lines")
    grn_line = models.ForeignKey(GoodsReceivedLine, on_delete=models.PROTECT, related_name="return_lines")


class StockAdjustment(StockDocument):
    reference_type = "inventory.stock_adjustment"
    number_prefix = "STADJ"


class StockAdjustmentLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    adjustment = models.ForeignKey(StockAdjustment, on_delete=models.CASCADE, related_name="lines")
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name="+")
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    reason_code = models.CharField(max_length=32, choices=AdjustmentReason.choices)
    remarks = models.TextField(blank=True, default="")
    current_stock = models.DecimalField(max_digits=14, decimal_places=3)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    batch_no = models.CharField(max_length=64, blank=True, default="")


class Dispatch(StockDocument):
    reference_type = "inventory.dispatch"
    number_prefix = "DISP"

    destination_store = models.ForeignKey(Store, on_delete=models.PROTECT, related_name="incoming_dispatches")


class DispatchLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    dispatch = models.ForeignKey(Dispatch, on_delete=models.CASCADE, related_name="lines")
    item = models.ForeignKey(Item, on_delete=models.PROTECT, related_name="+")
    quantity = models.DecimalField(max_digits=14, decimal_places=3)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    line_value = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    batch_no = models.CharField(max_length=64, blank=True, default="")
