from rest_framework import serializers

from core.models import Store
from inventory.documents import DocumentType, line_from_payload
from inventory.serializers import (
    DOCUMENT_FIELDS,
    PRICED_LINE_FIELDS,
    DocumentCreateSerializer,
    PricedLineInputSerializer,
    PricedLineSerializer,
    ReturnCreateSerializer,
)
from sales.models import Customer, Quotation, QuotationLine, Sale, SaleLine, SalesReturn, SalesReturnLine
from sales.services import create_quotation, post_sale, post_sales_return, sale_document_type


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "code", "name", "phone", "email", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


# Input


class SaleCreateSerializer(DocumentCreateSerializer):
    sale_type = serializers.ChoiceField(choices=Sale.SaleType.choices, default=Sale.SaleType.RETAIL)
    customer = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.filter(is_active=True), required=False, allow_null=True)
    payment_status = serializers.ChoiceField(choices=Sale.PaymentStatus.choices, default=Sale.PaymentStatus.UNPAID)
    payment_method = serializers.ChoiceField(choices=Sale.PaymentMethod.choices, default=Sale.PaymentMethod.CASH)
    lines = PricedLineInputSerializer(many=True, allow_empty=False)

    def validate(self, attrs):
        if attrs["sale_type"] == Sale.SaleType.WHOLESALE and attrs.get("customer") is None:
            raise serializers.ValidationError({"customer": "Wholesale sales require a customer."})
        return attrs

    def build_lines(self, validated_data):
        document_type = sale_document_type(validated_data["sale_type"])
        return [line_from_payload(document_type, row) for row in validated_data["lines"]]

    def post(self, lines, validated_data, user):
        return post_sale(
            validated_data["store"],
            lines,
            sale_type=validated_data["sale_type"],
            customer=validated_data.get("customer"),
            payment_status=validated_data["payment_status"],
            payment_method=validated_data["payment_method"],
            notes=validated_data["notes"],
            user=user,
        )


class SalesReturnCreateSerializer(ReturnCreateSerializer):
    document_type = DocumentType.SALES_RETURN
    source_line_model = SaleLine

    sale = serializers.PrimaryKeyRelatedField(queryset=Sale.objects.all())

    def post(self, lines, validated_data, user):
        return post_sales_return(
            validated_data["sale"],
            lines,
            reason=validated_data["reason"],
            notes=validated_data["notes"],
            user=user,
        )


class QuotationCreateSerializer(serializers.Serializer):
    store = serializers.PrimaryKeyRelatedField(queryset=Store.objects.filter(is_active=True))
    customer = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.filter(is_active=True), required=False, allow_null=True)
    valid_until = serializers.DateField()
    reserve_stock = serializers.BooleanField(required=False, default=False)
    terms = serializers.CharField(required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    lines = PricedLineInputSerializer(many=True, allow_empty=False)

    def create(self, validated_data):
        request = self.context.get("request")
        user = getattr(request, "user", None)
        if user is not None and not user.is_authenticated:
            user = None
        return create_quotation(
            validated_data["store"],
            [line_from_payload(DocumentType.QUOTATION, row) for row in validated_data["lines"]],
            valid_until=validated_data["valid_until"],
            customer=validated_data.get("customer"),
            reserve_stock=validated_data["reserve_stock"],
            terms=validated_data["terms"],
            notes=validated_data["notes"],
            user=user,
        )


class QuotationConvertSerializer(serializers.Serializer):
    line_ids = serializers.ListField(child=serializers.UUIDField(), required=False, allow_empty=False)
    sale_type = serializers.ChoiceField(choices=Sale.SaleType.choices, default=Sale.SaleType.RETAIL)
    payment_status = serializers.ChoiceField(choices=Sale.PaymentStatus.choices, default=Sale.PaymentStatus.UNPAID)
    payment_method = serializers.ChoiceField(choices=Sale.PaymentMethod.choices, default=Sale.PaymentMethod.CASH)
    reprice = serializers.BooleanField(required=False, default=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


# Output


class SaleLineSerializer(PricedLineSerializer):
    class Meta:
        model = SaleLine
        fields = PRICED_LINE_FIELDS + ["quotation_line"]
        read_only_fields = fields


class SaleSerializer(serializers.ModelSerializer):
    lines = SaleLineSerializer(many=True, read_only=True)
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)

    class Meta:
        model = Sale
        fields = DOCUMENT_FIELDS + [
            "sale_type",
            "customer",
            "customer_name",
            "payment_status",
            "payment_method",
            "quotation",
            "lines",
        ]
        read_only_fields = fields


class SalesReturnLineSerializer(PricedLineSerializer):
    class Meta:
        model = SalesReturnLine
        fields = PRICED_LINE_FIELDS + ["sale_line"]
        read_only_fields = fields


class SalesReturnSerializer(serializers.ModelSerializer):
    lines = SalesReturnLineSerializer(many=True, read_only=True)

    class Meta:
        model = SalesReturn
        fields = DOCUMENT_FIELDS + ["sale", "reason", "lines"]
        read_only_fields = fields


class QuotationLineSerializer(PricedLineSerializer):
    class Meta:
        model = QuotationLine
        fields = ["line_no"] + PRICED_LINE_FIELDS + ["reserved_quantity", "converted_sale"]
        read_only_fields = fields


class QuotationSerializer(serializers.ModelSerializer):
    lines = QuotationLineSerializer(many=True, read_only=True)

    class Meta:
        model = Quotation
        fields = [
            "id",
            "number",
            "store",
            "customer",
            "status",
            "valid_until",
            "reserve_stock",
            "subtotal",
            "discount_total",
            "tax_total",
            "total",
            "terms",
            "notes",
            "created_by",
            "created_at",
            "updated_at",
            "lines",
        ]
        read_only_fields = fields
