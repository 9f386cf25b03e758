import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models

TAX_METHOD_CHOICES = [("exclusive", "Exclusive"), ("inclusive", "Inclusive"), ("none", "None")]
DOCUMENT_STATUS_CHOICES = [("posted", "Posted"), ("cancelled", "Cancelled")]
SALE_TYPE_CHOICES = [("retail", "Retail"), ("wholesale", "Wholesale")]
PAYMENT_STATUS_CHOICES = [("unpaid", "Unpaid"), ("partial", "Partial"), ("paid", "Paid")]
PAYMENT_METHOD_CHOICES = [("cash", "Cash"), ("card", "Card"), ("bank_transfer", "Bank transfer"), ("credit", "Credit")]
QUOTATION_STATUS_CHOICES = [
    ("active", "Active"),
    ("expired", "Expired"),
    ("converted", "Converted"),
    ("cancelled", "Cancelled"),
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
        ("inventory", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=64, unique=True)),
                ("name", models.CharField(max_length=255)),
                ("phone", models.CharField(blank=True, max_length=64, null=True)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["phone"], name="customer_phone_idx"),
                    models.Index(fields=["email"], name="customer_email_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Quotation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("number", models.CharField(max_length=64, unique=True)),
                ("status", models.CharField(choices=QUOTATION_STATUS_CHOICES, default="active", max_length=16)),
                ("valid_until", models.DateField()),
                ("reserve_stock", models.BooleanField(default=False)),
                ("subtotal", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("discount_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("tax_total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("total", models.DecimalField(decimal_places=2, default=0, max_digits=14)),
                ("terms", models.TextField(blank=True, default="")),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
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
                    "customer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="quotations",
                        to="sales.customer",
                    ),
                ),
                (
                    "store",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="quotations",
                        to="core.store",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["store", "status", "valid_until"], name="quotation_store_status_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Sale",
            fields=document_fields()
            + [
                ("sale_type", models.CharField(choices=SALE_TYPE_CHOICES, default="retail", max_length=16)),
                ("payment_status", models.CharField(choices=PAYMENT_STATUS_CHOICES, default="unpaid", max_length=16)),
                ("payment_method", models.CharField(choices=PAYMENT_METHOD_CHOICES, default="cash", max_length=16)),
                (
                    "customer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="sales",
                        to="sales.customer",
                    ),
                ),
                (
                    "quotation",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="sales",
                        to="sales.quotation",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["store", "created_at"], name="sale_store_created_idx"),
                    models.Index(fields=["status", "created_at"], name="sale_status_created_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="QuotationLine",
            fields=priced_line_fields()
            + [
                ("reserved_quantity", models.DecimalField(decimal_places=3, default=0, max_digits=14)),
                ("line_no", models.PositiveIntegerField(default=0)),
                (
                    "converted_sale",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="converted_quotation_lines",
                        to="sales.sale",
                    ),
                ),
                (
                    "quotation",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="sales.quotation",
                    ),
                ),
            ],
            options={
                "ordering": ["line_no"],
            },
        ),
        migrations.CreateModel(
            name="SaleLine",
            fields=priced_line_fields()
            + [
                (
                    "quotation_line",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="sale_lines",
                        to="sales.quotationline",
                    ),
                ),
                (
                    "sale",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="sales.sale",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="SalesReturn",
            fields=document_fields()
            + [
                ("reason", models.TextField(blank=True, default="")),
                (
                    "sale",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="returns",
                        to="sales.sale",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
        migrations.CreateModel(
            name="SalesReturnLine",
            fields=priced_line_fields()
            + [
                (
                    "sale_line",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="return_lines",
                        to="sales.saleline",
                    ),
                ),
                (
                    "sales_return",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="lines",
                        to="sales.salesreturn",
                    ),
                ),
            ],
            options={
                "abstract": False,
            },
        ),
    ]
