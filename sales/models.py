import uuid

from django.db import models

from core.models import Store, User
from inventory.models import PricedLine, StockDocument


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=64, null=True, blank=True)
    email = models.EmailField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["phone"], name="customer_phone_idx"),
            models.Index(fields=["email"], name="customer_email_idx"),
        ]


class Sale(StockDocument):
    class SaleType(models.TextChoices):
        RETAIL = "retail", "Retail"
        WHOLESALE = "wholesale", "Wholesale"

    class PaymentStatus(models.TextChoices):
        UNPAID = "unpaid", "Unpaid"
        PARTIAL = "partial", "Partial"
        PAID = "paid", "Paid"

    class PaymentMethod(models.TextChoices):
        CASH = "cash", "Cash"
        CARD = "card", "Card"
        BANK_TRANSFER = "bank_transfer", "Bank transfer"
        CREDIT = "credit", "Credit"

    reference_type = "sales.sale"
    NUMBER_PREFIXES = {SaleType.RETAIL: "SINV", SaleType.WHOLESALE: "WINV"}

    sale_type = models.CharField(max_length=16, choices=SaleType.choices, default=SaleType.RETAIL)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, null=True, blank=True, related_name="sales")
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    quotation = models.ForeignKey("Quotation", on_delete=models.PROTECT, null=True, blank=True, related_name="sales")

    class Meta:
        indexes = [
            models.Index(fields=["store", "created_at"], name="sale_store_created_idx"),
            models.Index(fields=["status", "created_at"], name="sale_status_created_idx"),
        ]

    def has_active_returns(self):
        return self.returns.filter(status=StockDocument.Status.POSTED).exists()


class SaleLine(PricedLine):
    sale = models.ForeignKey(Sale, on_delete=models.CASCADE, related_name="lines")
    quotation_line = models.ForeignKey(
        "QuotationLine",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="sale_lines",
    )


class SalesReturn(StockDocument):
    reference_type = "sales.sales_return"
    number_prefix = "SRET"

    sale = models.ForeignKey(Sale, on_delete=models.PROTECT, related_name="returns")
    reason = models.TextField(blank=True, default="")


class SalesReturnLine(PricedLine):
    parent_field = "sales_return"

    sales_return = models.ForeignKey(SalesReturn, on_delete=models.CASCADE, related_name="lines")
    sale_line = models.ForeignKey(SaleLine, on_delete=models.PROTECT, related_name="return_lines")


class Quotation(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        EXPIRED = "expired", "Expired"
        CONVERTED = "converted", "Converted"
        CANCELLED = "cancelled", "Cancelled"

    number_prefix = "QUOT"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    number = models.CharField(max_length=64, unique=True)
    store = models.ForeignKey(Store, on_delete=models.PROTECT, related_name="quotations")
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, null=True, blank=True, related_name="quotations")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.ACTIVE)
    valid_until = models.DateField()
    reserve_stock = models.BooleanField(default=False)
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    discount_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    tax_total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    terms = models.TextField(blank=True, default="")
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["store", "status", "valid_until"], name="quotation_store_status_idx"),
        ]


class QuotationLine(PricedLine):
    quotation = models.ForeignKey(Quotation, on_delete=models.CASCADE, related_name="lines")
    reserved_quantity = models.DecimalField(max_digits=14, decimal_places=3, default=0)
    converted_sale = models.ForeignKey(
        Sale,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="converted_quotation_lines",
    )
    line_no = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["line_no"]
