from decimal import Decimal

from rest_framework import serializers

from core.models import Store
from inventory.documents import AdjustmentReason, DocumentType, discount_from_payload, line_from_payload
from inventory.exceptions import ValidationError
from inventory.models import (
    Dispatch,
    DispatchLine,
    GoodsReceivedLine,
    GoodsReceivedNote,
    Item,
    OpeningStockEntry,
    OpeningStockLine,
    PurchaseReturn,
    PurchaseReturnLine,
    StockAdjustment,
    StockAdjustmentLine,
    StockMovement,
    StoreItemStock,
    Supplier,
)
from inventory.policies import post_adjustment, post_dispatch, post_grn, post_opening_stock, post_purchase_return
from inventory.pricing import TaxMethod
from inventory.status import StockStatus

MIN_QUANTITY = Decimal("0.001")


class ItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = Item
        fields = [
            "id",
            "code",
            "name",
            "unit_of_measure",
            "cost_price",
            "retail_price",
            "wholesale_price",
            "tax_method",
            "tax_rate",
            "reorder_level",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]
        extra_kwargs = {
            "cost_price": {"min_value": Decimal("0")},
            "retail_price": {"min_value": Decimal("0")},
            "wholesale_price": {"min_value": Decimal("0")},
            "tax_rate": {"min_value": Decimal("0"), "max_value": Decimal("100")},
        }


class ItemPricesSerializer(serializers.Serializer):
    cost_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    retail_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    wholesale_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)

    def validate(self, attrs):
        if not attrs:
            raise serializers.ValidationError("Provide at least one price to update.")
        return attrs


class SupplierSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = ["id", "code", "name", "phone", "email", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


# Line input


class LineInputSerializer(serializers.Serializer):
    item = serializers.PrimaryKeyRelatedField(queryset=Item.objects.filter(is_active=True))
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3, min_value=MIN_QUANTITY)
    batch_no = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")


class PricedLineInputSerializer(LineInputSerializer):
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True)
    discount_percent = serializers.DecimalField(
        max_digits=5,
        decimal_places=2,
        min_value=Decimal("0"),
        max_value=Decimal("100"),
        required=False,
        allow_null=True,
    )
    discount_value = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True)


class InwardLineInputSerializer(PricedLineInputSerializer):
    retail_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True)
    wholesale_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True)


class ReturnLineInputSerializer(serializers.Serializer):
    source_line = serializers.UUIDField()
    item = serializers.PrimaryKeyRelatedField(queryset=Item.objects.all(), required=False)
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3, min_value=MIN_QUANTITY)
    batch_no = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")


class AdjustmentLineInputSerializer(serializers.Serializer):
    item = serializers.PrimaryKeyRelatedField(queryset=Item.objects.filter(is_active=True))
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    reason_code = serializers.ChoiceField(choices=AdjustmentReason.choices)
    remarks = serializers.CharField(required=False, allow_blank=True, default="")
    batch_no = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")

    def validate_quantity(self, value):
        if value == 0:
            raise serializers.ValidationError("Adjustment quantity must not be zero.")
        return value


# Document input


class PostingSerializer(serializers.Serializer):
    """Validates a document payload and posts it through its movement policy on ``save()``."""

    document_type = None

    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def build_lines(self, validated_data):
        return [line_from_payload(self.document_type, row) for row in validated_data["lines"]]

    def post(self, lines, validated_data, user):
        raise NotImplementedError

    def create(self, validated_data):
        request = self.context.get("request")
        user = getattr(request, "user", None)
        if user is not None and not user.is_authenticated:
            user = None
        self.posting_result = self.post(self.build_lines(validated_data), validated_data, user)
        return self.posting_result.document


class DocumentCreateSerializer(PostingSerializer):
    store = serializers.PrimaryKeyRelatedField(queryset=Store.objects.filter(is_active=True))


class OpeningStockCreateSerializer(DocumentCreateSerializer):
    document_type = DocumentType.OPENING_STOCK

    supplier = serializers.PrimaryKeyRelatedField(queryset=Supplier.objects.all(), required=False, allow_null=True)
    update_cost_price = serializers.BooleanField(required=False, default=False)
    lines = InwardLineInputSerializer(many=True, allow_empty=False)

    def post(self, lines, validated_data, user):
        return post_opening_stock(
            validated_data["store"],
            lines,
            supplier=validated_data.get("supplier"),
            update_cost_price=validated_data["update_cost_price"],
            notes=validated_data["notes"],
            user=user,
        )


class GoodsReceivedNoteCreateSerializer(DocumentCreateSerializer):
    document_type = DocumentType.GRN

    supplier = serializers.PrimaryKeyRelatedField(queryset=Supplier.objects.filter(is_active=True))
    supplier_invoice_no = serializers.CharField(max_length=64, required=False, allow_blank=True, default="")
    update_cost_price = serializers.BooleanField(required=False, default=False)
    lines = InwardLineInputSerializer(many=True, allow_empty=False)

    def post(self, lines, validated_data, user):
        return post_grn(
            validated_data["store"],
            lines,
            supplier=validated_data["supplier"],
            supplier_invoice_no=validated_data["supplier_invoice_no"],
            update_cost_price=validated_data["update_cost_price"],
            notes=validated_data["notes"],
            user=user,
        )


class ReturnCreateSerializer(PostingSerializer):
    """Return against an original document; a line's item defaults to its source line's item."""

    source_line_model = None

    reason = serializers.CharField(required=False, allow_blank=True, default="")
    lines = ReturnLineInputSerializer(many=True, allow_empty=False)

    def build_lines(self, validated_data):
        source_ids = [row["source_line"] for row in validated_data["lines"]]
        source_items = dict(self.source_line_model.objects.filter(id__in=source_ids).values_list("id", "item_id"))
        unknown = [str(source_id) for source_id in source_ids if source_id not in source_items]
        if unknown:
            raise ValidationError("Return lines must reference existing document lines.", source_line_ids=unknown)
        return [
            line_from_payload(self.document_type, {**row, "item": row.get("item") or source_items[row["source_line"]]})
            for row in validated_data["lines"]
        ]


class PurchaseReturnCreateSerializer(ReturnCreateSerializer):
    document_type = DocumentType.PURCHASE_RETURN
    source_line_model = GoodsReceivedLine

    grn = serializers.PrimaryKeyRelatedField(queryset=GoodsReceivedNote.objects.all())

    def post(self, lines, validated_data, user):
        return post_purchase_return(
            validated_data["grn"],
            lines,
            reason=validated_data["reason"],
            notes=validated_data["notes"],
            user=user,
        )


class StockAdjustmentCreateSerializer(DocumentCreateSerializer):
    document_type = DocumentType.ADJUSTMENT

    lines = AdjustmentLineInputSerializer(many=True, allow_empty=False)

    def post(self, lines, validated_data, user):
        return post_adjustment(validated_data["store"], lines, notes=validated_data["notes"], user=user)


class DispatchCreateSerializer(DocumentCreateSerializer):
    document_type = DocumentType.DISPATCH

    destination_store = serializers.PrimaryKeyRelatedField(queryset=Store.objects.filter(is_active=True))
    lines = LineInputSerializer(many=True, allow_empty=False)

    def post(self, lines, validated_data, user):
        return post_dispatch(
            validated_data["store"],
            validated_data["destination_store"],
            lines,
            notes=validated_data["notes"],
            user=user,
        )


# Document output

PRICED_LINE_FIELDS = [
    "id",
    "item",
    "item_code",
    "item_name",
    "quantity",
    "unit_price",
    "discount_percent",
    "discount_value",
    "discount_is_override",
    "tax_method",
    "tax_rate",
    "tax_value",
    "net_value",
    "batch_no",
]

DOCUMENT_FIELDS = [
    "id",
    "number",
    "store",
    "status",
    "subtotal",
    "discount_total",
    "tax_total",
    "total",
    "notes",
    "created_by",
    "cancelled_at",
    "created_at",
    "updated_at",
]


class PricedLineSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="item.code", read_only=True)
    item_name = serializers.CharField(source="item.name", read_only=True)


class OpeningStockLineSerializer(PricedLineSerializer):
    class Meta:
        model = OpeningStockLine
        fields = PRICED_LINE_FIELDS
        read_only_fields = fields


class OpeningStockEntrySerializer(serializers.ModelSerializer):
    lines = OpeningStockLineSerializer(many=True, read_only=True)

    class Meta:
        model = OpeningStockEntry
        fields = DOCUMENT_FIELDS + ["supplier", "update_cost_price", "lines"]
        read_only_fields = fields


class GoodsReceivedLineSerializer(PricedLineSerializer):
    class Meta:
        model = GoodsReceivedLine
        fields = PRICED_LINE_FIELDS
        read_only_fields = fields


class GoodsReceivedNoteSerializer(serializers.ModelSerializer):
    lines = GoodsReceivedLineSerializer(many=True, read_only=True)

    class Meta:
        model = GoodsReceivedNote
        fields = DOCUMENT_FIELDS + ["supplier", "supplier_invoice_no", "update_cost_price", "lines"]
        read_only_fields = fields


class PurchaseReturnLineSerializer(PricedLineSerializer):
    class Meta:
        model = PurchaseReturnLine
        fields = PRICED_LINE_FIELDS + ["grn_line"]
        read_only_fields = fields


class PurchaseReturnSerializer(serializers.ModelSerializer):
    lines = PurchaseReturnLineSerializer(many=True, read_only=True)

    class Meta:
        model = PurchaseReturn
        fields = DOCUMENT_FIELDS + ["grn", "reason", "lines"]
        read_only_fields = fields


class StockAdjustmentLineSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="item.code", read_only=True)

    class Meta:
        model = StockAdjustmentLine
        fields = ["id", "item", "item_code", "quantity", "reason_code", "remarks", "current_stock", "unit_cost", "batch_no"]
        read_only_fields = fields


class StockAdjustmentSerializer(serializers.ModelSerializer):
    lines = StockAdjustmentLineSerializer(many=True, read_only=True)

    class Meta:
        model = StockAdjustment
        fields = DOCUMENT_FIELDS + ["lines"]
        read_only_fields = fields


class DispatchLineSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="item.code", read_only=True)

    class Meta:
        model = DispatchLine
        fields = ["id", "item", "item_code", "quantity", "unit_cost", "line_value", "batch_no"]
        read_only_fields = fields


class DispatchSerializer(serializers.ModelSerializer):
    lines = DispatchLineSerializer(many=True, read_only=True)

    class Meta:
        model = Dispatch
        fields = DOCUMENT_FIELDS + ["destination_store", "lines"]
        read_only_fields = fields


# Ledger views


class StockMovementSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="item.code", read_only=True)
    store_code = serializers.CharField(source="store.code", read_only=True)

    class Meta:
        model = StockMovement
        fields = [
            "id",
            "item",
            "item_code",
            "store",
            "store_code",
            "transaction_type",
            "quantity",
            "batch_no",
            "reference_type",
            "reference_id",
            "sequence",
            "running_balance",
            "unit_cost",
            "reverses",
            "created_by",
            "created_at",
        ]
        read_only_fields = fields


class StoreItemStockSerializer(serializers.ModelSerializer):
    available_quantity = serializers.DecimalField(max_digits=14, decimal_places=3, read_only=True)

    class Meta:
        model = StoreItemStock
        fields = ["item", "store", "quantity_on_hand", "reserved_quantity", "available_quantity", "version", "updated_at"]
        read_only_fields = fields


class ProjectionQuerySerializer(serializers.Serializer):
    item = serializers.PrimaryKeyRelatedField(queryset=Item.objects.all())
    store = serializers.PrimaryKeyRelatedField(queryset=Store.objects.all())


class HistoryQuerySerializer(ProjectionQuerySerializer):
    since = serializers.DateTimeField(required=False)
    days = serializers.IntegerField(required=False, min_value=1, max_value=3650)


class StockReportQuerySerializer(serializers.Serializer):
    store = serializers.PrimaryKeyRelatedField(queryset=Store.objects.all())
    status = serializers.ChoiceField(choices=StockStatus.choices, required=False)
    search = serializers.CharField(required=False, allow_blank=True)


class MovementReverseSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class PricingPreviewSerializer(serializers.Serializer):
    quantity = serializers.DecimalField(max_digits=14, decimal_places=3)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2)
    discount_percent = serializers.DecimalField(max_digits=7, decimal_places=2, required=False, allow_null=True)
    discount_value = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)
    tax_method = serializers.ChoiceField(choices=TaxMethod.choices, default=TaxMethod.NONE)
    tax_rate = serializers.DecimalField(max_digits=7, decimal_places=2, default=Decimal("0"))

    def discount(self):
        return discount_from_payload(self.validated_data)
