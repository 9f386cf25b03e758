from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.permissions import RoleCapabilityPermission
from core.views import scoped_queryset_for_user
from inventory.views import AuditMixin, MasterRecordViewSet, StockDocumentViewSet, document_permissions, ensure_store_access
from sales.models import Customer, Quotation, Sale, SalesReturn
from sales.serializers import (
    CustomerSerializer,
    QuotationConvertSerializer,
    QuotationCreateSerializer,
    QuotationSerializer,
    SaleCreateSerializer,
    SaleSerializer,
    SalesReturnCreateSerializer,
    SalesReturnSerializer,
)
from sales.services import cancel_quotation, cancel_sale, convert_quotation


class CustomerViewSet(MasterRecordViewSet):
    queryset = Customer.objects.all()
    serializer_class = CustomerSerializer
    audit_entity = "customer"


class SaleViewSet(StockDocumentViewSet):
    queryset = Sale.objects.select_related("store", "customer").prefetch_related("lines__item")
    serializer_class = SaleSerializer
    create_serializer_class = SaleCreateSerializer
    permission_action_map = document_permissions("sales.post")
    audit_entity = "sale"

    def get_queryset(self):
        qs = super().get_queryset()
        sale_type = self.request.query_params.get("sale_type")
        if sale_type:
            qs = qs.filter(sale_type=sale_type)
        customer_id = self.request.query_params.get("customer_id")
        if customer_id:
            qs = qs.filter(customer_id=customer_id)
        return qs

    def cancel_document(self, document):
        return cancel_sale(document, user=self.request.user)


class SalesReturnViewSet(StockDocumentViewSet):
    queryset = SalesReturn.objects.select_related("store", "sale").prefetch_related("lines__item")
    serializer_class = SalesReturnSerializer
    create_serializer_class = SalesReturnCreateSerializer
    permission_action_map = document_permissions("sales.return")
    audit_entity = "sales_return"

    def posting_store(self, validated_data):
        return validated_data["sale"].store


class QuotationViewSet(AuditMixin, mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    queryset = Quotation.objects.select_related("store", "customer").prefetch_related("lines__item")
    serializer_class = QuotationSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "stock.view",
        "retrieve": "stock.view",
        "create": "quotation.manage",
        "cancel": "quotation.manage",
        "convert": "quotation.convert",
    }
    audit_entity = "quotation"

    def get_serializer_class(self):
        if self.action == "create":
            return QuotationCreateSerializer
        return QuotationSerializer

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user)
        quotation_status = self.request.query_params.get("status")
        if quotation_status:
            qs = qs.filter(status=quotation_status)
        return qs.order_by("-created_at")

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        ensure_store_access(request.user, serializer.validated_data["store"])
        quotation = serializer.save()
        payload = QuotationSerializer(quotation).data
        self._audit(action="quotation.create", instance=quotation, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="convert")
    def convert(self, request, pk=None):
        quotation = self.get_object()
        serializer = QuotationConvertSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        if data["sale_type"] == Sale.SaleType.WHOLESALE and quotation.customer_id is None:
            raise ValidationError({"customer": "Wholesale sales require a customer on the quotation."})

        result = convert_quotation(
            quotation,
            data.get("line_ids"),
            sale_type=data["sale_type"],
            payment_status=data["payment_status"],
            payment_method=data["payment_method"],
            reprice=data["reprice"],
            notes=data["notes"],
            user=request.user,
        )
        quotation.refresh_from_db()
        sale_payload = SaleSerializer(result.document).data
        self._audit(
            action="quotation.convert",
            instance=quotation,
            after_snapshot={"sale_id": str(result.document.id), "sale_number": result.document.number, "status": quotation.status},
        )
        return Response(
            {"quotation": QuotationSerializer(quotation).data, "sale": sale_payload},
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        quotation = cancel_quotation(self.get_object(), user=request.user)
        payload = QuotationSerializer(quotation).data
        self._audit(action="quotation.cancel", instance=quotation, after_snapshot=payload)
        return Response(payload)
