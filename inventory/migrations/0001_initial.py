import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

TAX_METHOD_CHOICES = [("exclusive", "Exclusive"), ("inclusive", "Inclusive"), ("none", "None")]
DOCUMENT_STATUS_CHOICES = [("posted", "Posted"), ("cancelled", "Cancelled")]
ADJUSTMENT_REASON_CHOICES = [
    ("damaged", "Damaged"),
    ("expired", "Expired"),
    ("theft_loss", "Theft / loss"),
    ("audit_variance", "Audit variance"),
    ("returned_to_supplier", "Returned to supplier"),
    ("promotional_giveaway", "Promotional giveaway"),
    ("other", "Other"),
]
TRANSACTION_TYPE_CHOICES = [
    ("opening_stock", "Opening stock"),
    ("grn", "Goods received"),
    ("sale", "Sale"),
    ("sales_return", "Sales return"),
    ("purchase_return", "Purchase return"),
    ("adjustment_in", "Adjustment in"),
    ("adjustment_out", "Adjustment out"),
    ("transfer_in", "Transfer in"),
    ("transfer_out", "Transfer out"),
    ("opening_stock_reversal", "Opening stock reversal"),
    ("grn_reversal", "Goods received reversal"),
    ("sale_reversal", "Sale reversal"),
    ("sales_return_reversal", "Sales return reversal"),
    ("purchase_return_reversal", "Purchase return reversal"),
    ("adjustment_in_reversal", "Adjustment in reversal"),
    ("adjustment_out_reversal", "Adjustment out reversal"),
    ("transfer_in_reversal", "Transfer in reversal"),
    ("transfer_out_reversal", "Transfer out reversal"),
]


def document_fields():
    return [
        ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
        ("number", models.CharField(max_length=64, unique=True)),
        ("status", models.CharField(choices=DOCUMENT_STATUS_CHOICES, default="posted", max_length=16)),
        ("subtotal", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
        ("discount_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
        ("tax_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
        ("total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
        ("notes", models.TextField(blank=True, default="")),
        ("cancelled_at", models.DateTimeField(blank=True, null=True)),
        ("created_at", models.DateTimeField(auto_now_add=True)),
        ("updated_at", models.DateTimeField(auto_now=True)),
        (
            "created_by",
            models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="+",
                to=settings.AUTH_USER_MODEL,
            ),
        ),
        ("store", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="+", to="core.store")),
    ]


def priced_line_fields():
    return [
        ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
        ("quantity", models.DecimalField(decimal_places=3, max_digits=14)),
        ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
        ("discount_percent", models.DecimalField(decimal_places=2, default=0, max_digits=5)),
        ("discount_value", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
        ("discount_is_override", models.BooleanField(default=False)),
        ("tax_method", models.CharField(choices=TAX_METHOD_CHOICES, default="none", max_length=16)),
        ("tax_rate", models.DecimalField(decimal_places=2, default=0, max_digits=5)),
        ("tax_value", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
        ("net_value", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
        ("batch_no", models.CharField(blank=True, default="", max_length=64)),
        ("item", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="+", to="inventory.item")),
    ]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Supplier",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=64, unique=True)),
                ("name", models.CharField(max_length=255)),
                ("phone", models.CharField(blank=True, default="", max_length=64)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [models.Index(fields=["is_active"], name="supplier_active_idx")],
            },
        ),
        migrations.CreateModel(
            name="Item",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=64, unique=True)),
                ("name", models.CharField(max_length=255)),
                ("unit_of_measure", models.CharField(default="pcs", max_length=32)),
                ("cost_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("retail_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("wholesale_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("tax_method", models.CharField(choices=TAX_METHOD_CHOICES, default="none", max_length=16)),
                ("tax_rate", models.DecimalField(decimal_places=2, default=0, max_digits=5)),
                ("reorder_level", models.PositiveIntegerField(default=0)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [models.Index(fields=["is_active"], name="item_active_idx")],
            },
        ),
        migrations.CreateModel(
            name="StoreItemStock",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity_on_hand", models.DecimalField(decimal_places=3, default=0, max_digits=14)),
                ("reserved_quantity", models.DecimalField(decimal_places=3, default=0, max_digits=14)),
                ("version", models.PositiveBigIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="stock_levels",
                        to="inventory.item",
                    ),
                ),
                (
                    "store",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="stock_levels",
                        to="core.store",
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["store", "item"], name="stock_store_item_idx")],
                "constraints": [models.UniqueConstraint(fields=["item", "store"], name="uniq_stock_item_store")],
            },
        ),
        migrations.CreateModel(
            name="StockMovement",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("transaction_type", models.CharField(choices=TRANSACTION_TYPE_CHOICES, max_length=32)),
                ("quantity", models.DecimalField(decimal_places=3, max_digits=14)),
                ("batch_no", models.CharField(blank=True, default="", max_length=64)),
                ("reference_type", models.CharField(blank=True, default="", max_length=64)),
                ("reference_id", models.UUIDField(blank=True, null=True)),
                ("sequence", models.PositiveBigIntegerField()),
                ("running_balance", models.DecimalField(decimal_places=3, max_digits=14)),
                ("unit_cost", models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to="inventory.item",
                    ),
                ),
                (
                    "reverses",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reversed_by",
                        to="inventory.stockmovement",
                    ),
                ),
                (
                    "store",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to="core.store",
                    ),
                ),
            ],
            options={
                "ordering": ["sequence"],
                "indexes": [
                    models.Index(fields=["item", "store", "created_at"], name="movement_item_store_time_idx"),
                    models.Index(fields=["store", "created_at"], name="movement_store_time_idx"),
                    models.Index(fields=["reference_type", "reference_id"], name="movement_reference_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=["item", "store", "sequence"],
                        name="uniq_movement_item_store_sequence",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="DocumentSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("prefix", models.CharField(max_length=16)),
                ("last_value", models.PositiveIntegerField(default=0)),
                ("store", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to="core.store")),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=["store", "prefix"], name="uniq_document_sequence_store_prefix"),
                ],
            },
        ),
        migrations.CreateModel(
            name="OpeningStockEntry",
            fields=document_fields()
            + [
                ("update_cost_price", models.BooleanField(default=False)),
                (
                    "supplier",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        to="inventory.supplier",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="OpeningStockLine",
            fields=priced_line_fields()
            + [
                (
                    "entry",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="inventory.openingstockentry",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="GoodsReceivedNote",
            fields=document_fields()
            + [
                ("supplier_invoice_no", models.CharField(blank=True, default="", max_length=64)),
                ("update_cost_price", models.BooleanField(default=False)),
                (
                    "supplier",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="grns",
                        to="inventory.supplier",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="GoodsReceivedLine",
            fields=priced_line_fields()
            + [
                (
                    "grn",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="inventory.goodsreceivednote",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="PurchaseReturn",
            fields=document_fields()
            + [
                ("reason", models.TextField(blank=True, default="")),
                (
                    "grn",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="returns",
                        to="inventory.goodsreceivednote",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="PurchaseReturnLine",
            fields=priced_line_fields()
            + [
                (
                    "grn_line",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="return_lines",
                        to="inventory.goodsreceivedline",
                    ),
                ),
                (
                    "purchase_return",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="inventory.purchasereturn",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="StockAdjustment",
            fields=document_fields(),
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="StockAdjustmentLine",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity", models.DecimalField(decimal_places=3, max_digits=14)),
                ("reason_code", models.CharField(choices=ADJUSTMENT_REASON_CHOICES, max_length=32)),
                ("remarks", models.TextField(blank=True, default="")),
                ("current_stock", models.DecimalField(decimal_places=3, max_digits=14)),
                ("unit_cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("batch_no", models.CharField(blank=True, default="", max_length=64)),
                (
                    "adjustment",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="inventory.stockadjustment",
                    ),
                ),
                ("item", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="+", to="inventory.item")),
            ],
        ),
        migrations.CreateModel(
            name="Dispatch",
            fields=document_fields()
            + [
                (
                    "destination_store",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="incoming_dispatches",
                        to="core.store",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="DispatchLine",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity", models.DecimalField(decimal_places=3, max_digits=14)),
                ("unit_cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("line_value", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("batch_no", models.CharField(blank=True, default="", max_length=64)),
                (
                    "dispatch",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="inventory.dispatch",
                    ),
                ),
                ("item", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="+", to="inventory.item")),
            ],
        ),
    ]
