from dataclasses import asdict
from datetime import timedelta

from django.db.models import Q
from django.utils import timezone
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.pagination import StockHistoryPagination
from common.permissions import RoleCapabilityPermission, user_has_capability
from core.views import scoped_queryset_for_user
from inventory.ledger import get_stock_ledger, run_with_conflict_retry
from inventory.models import (
    Dispatch,
    GoodsReceivedNote,
    Item,
    OpeningStockEntry,
    PurchaseReturn,
    StockAdjustment,
    StockMovement,
    Supplier,
)
from inventory.policies import cancel_document
from inventory.pricing import price_line
from inventory.serializers import (
    DispatchCreateSerializer,
    DispatchSerializer,
    GoodsReceivedNoteCreateSerializer,
    GoodsReceivedNoteSerializer,
    HistoryQuerySerializer,
    ItemPricesSerializer,
    ItemSerializer,
    MovementReverseSerializer,
    OpeningStockCreateSerializer,
    OpeningStockEntrySerializer,
    PricingPreviewSerializer,
    ProjectionQuerySerializer,
    PurchaseReturnCreateSerializer,
    PurchaseReturnSerializer,
    StockAdjustmentCreateSerializer,
    StockAdjustmentSerializer,
    StockMovementSerializer,
    StockReportQuerySerializer,
    StoreItemStockSerializer,
    SupplierSerializer,
)
from inventory.services import update_item_prices
from inventory.status import build_stock_report, classify

MASTER_WRITE_ACTIONS = ["create", "update", "partial_update", "destroy"]


def ensure_store_access(user, store):
    if user.is_superuser or user_has_capability(user, "admin.records.manage"):
        return
    if getattr(user, "store_id", None) != store.id:
        raise PermissionDenied("You can only access your own store.")


class AuditMixin:
    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
            store=getattr(instance, "store", None),
        )


class MasterRecordViewSet(AuditMixin, viewsets.ModelViewSet):
    """Master data: everyone reads, admins write. Deleting deactivates the record."""

    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "masters.view",
        "retrieve": "masters.view",
        **{action_name: "admin.records.manage" for action_name in MASTER_WRITE_ACTIONS},
    }

    def get_queryset(self):
        qs = super().get_queryset()
        search = self.request.query_params.get("search")
        if search:
            qs = qs.filter(Q(code__icontains=search) | Q(name__icontains=search))
        if self.request.query_params.get("active") in {"1", "true"}:
            qs = qs.filter(is_active=True)
        return qs.order_by("code")

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action=f"{self.audit_entity}.update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        instance.is_active = False
        instance.save(update_fields=["is_active", "updated_at"])
        self._audit(action=f"{self.audit_entity}.deactivate", instance=instance, after_snapshot=self.get_serializer(instance).data)


class ItemViewSet(MasterRecordViewSet):
    queryset = Item.objects.all()
    serializer_class = ItemSerializer
    permission_action_map = {**MasterRecordViewSet.permission_action_map, "prices": "admin.records.manage"}
    audit_entity = "item"

    @action(detail=True, methods=["post"], url_path="prices")
    def prices(self, request, pk=None):
        item = self.get_object()
        before_snapshot = self.get_serializer(item).data
        serializer = ItemPricesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item = update_item_prices(item, **serializer.validated_data)
        after_snapshot = self.get_serializer(item).data
        self._audit(action="item.prices", instance=item, before_snapshot=before_snapshot, after_snapshot=after_snapshot)
        return Response(after_snapshot)


class SupplierViewSet(MasterRecordViewSet):
    queryset = Supplier.objects.all()
    serializer_class = SupplierSerializer
    audit_entity = "supplier"


class StockDocumentViewSet(AuditMixin, mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    """List, retrieve, post and cancel one kind of stock document.

    Posting goes through ``create_serializer_class``, whose ``save()`` runs the
    document's movement policy; the response renders the posted document.
    """

    create_serializer_class = None
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    store_field = "store_id"

    def get_serializer_class(self):
        if self.action == "create":
            return self.create_serializer_class
        return self.serializer_class

    def get_queryset(self):
        qs = scoped_queryset_for_user(super().get_queryset(), self.request.user, field=self.store_field)
        document_status = self.request.query_params.get("status")
        if document_status:
            qs = qs.filter(status=document_status)
        return qs.order_by("-created_at")

    def render(self, document):
        return self.serializer_class(document, context=self.get_serializer_context()).data

    def posting_store(self, validated_data):
        return validated_data["store"]

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        ensure_store_access(request.user, self.posting_store(serializer.validated_data))
        document = serializer.save()
        payload = self.render(document)
        self._audit(action=f"{self.audit_entity}.post", instance=document, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)

    def cancel_document(self, document):
        return cancel_document(document, user=self.request.user)

    @action(detail=True, methods=["post"], url_path="cancel")
    def cancel(self, request, pk=None):
        document = self.get_object()
        before_snapshot = self.render(document)
        result = self.cancel_document(document)
        payload = self.render(result.document)
        self._audit(
            action=f"{self.audit_entity}.cancel",
            instance=result.document,
            before_snapshot=before_snapshot,
            after_snapshot=payload,
        )
        return Response(payload)

    @action(detail=True, methods=["get"], url_path="movements")
    def movements(self, request, pk=None):
        document = self.get_object()
        movements = document.movements().select_related("item", "store").order_by("created_at", "sequence")
        return Response(StockMovementSerializer(movements, many=True).data)


def document_permissions(post_capability, cancel_capability="document.cancel"):
    return {
        "list": "stock.view",
        "retrieve": "stock.view",
        "movements": "stock.view",
        "create": post_capability,
        "cancel": cancel_capability,
    }


class OpeningStockViewSet(StockDocumentViewSet):
    queryset = OpeningStockEntry.objects.select_related("store", "supplier").prefetch_related("lines__item")
    serializer_class = OpeningStockEntrySerializer
    create_serializer_class = OpeningStockCreateSerializer
    permission_action_map = document_permissions("stock.opening")
    audit_entity = "opening_stock"


class GoodsReceivedNoteViewSet(StockDocumentViewSet):
    queryset = GoodsReceivedNote.objects.select_related("store", "supplier").prefetch_related("lines__item")
    serializer_class = GoodsReceivedNoteSerializer
    create_serializer_class = GoodsReceivedNoteCreateSerializer
    permission_action_map = document_permissions("stock.receive")
    audit_entity = "grn"


class PurchaseReturnViewSet(StockDocumentViewSet):
    queryset = PurchaseReturn.objects.select_related("store", "grn").prefetch_related("lines__item")
    serializer_class = PurchaseReturnSerializer
    create_serializer_class = PurchaseReturnCreateSerializer
    permission_action_map = document_permissions("stock.receive")
    audit_entity = "purchase_return"

    def posting_store(self, validated_data):
        return validated_data["grn"].store


class StockAdjustmentViewSet(StockDocumentViewSet):
    queryset = StockAdjustment.objects.select_related("store").prefetch_related("lines__item")
    serializer_class = StockAdjustmentSerializer
    create_serializer_class = StockAdjustmentCreateSerializer
    permission_action_map = document_permissions("stock.adjust")
    audit_entity = "stock_adjustment"


class DispatchViewSet(StockDocumentViewSet):
    queryset = Dispatch.objects.select_related("store", "destination_store").prefetch_related("lines__item")
    serializer_class = DispatchSerializer
    create_serializer_class = DispatchCreateSerializer
    permission_action_map = document_permissions("stock.dispatch")
    audit_entity = "dispatch"

    def get_queryset(self):
        if self.request.query_params.get("incoming") in {"1", "true"}:
            self.store_field = "destination_store_id"
        return super().get_queryset()


# Ledger reads and corrections


class StockReportView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "stock.view"}

    def get(self, request):
        query = StockReportQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        store = query.validated_data["store"]
        ensure_store_access(request.user, store)
        report = build_stock_report(
            store,
            status=query.validated_data.get("status"),
            search=query.validated_data.get("search"),
            include_zero=request.query_params.get("include_zero", "true").lower() not in {"0", "false"},
        )
        return Response(report)


class StockProjectionView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "stock.view"}

    def get(self, request):
        query = ProjectionQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        item = query.validated_data["item"]
        store = query.validated_data["store"]
        ensure_store_access(request.user, store)
        projection = get_stock_ledger().get_projection(item.id, store.id)
        payload = dict(StoreItemStockSerializer(projection).data)
        payload["status"] = classify(projection.quantity_on_hand, item.reorder_level)
        return Response(payload)


class StockHistoryView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "stock.view"}

    def get(self, request):
        query = HistoryQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        item = query.validated_data["item"]
        store = query.validated_data["store"]
        ensure_store_access(request.user, store)

        since = query.validated_data.get("since")
        days = query.validated_data.get("days")
        if since is None and days:
            since = timezone.now() - timedelta(days=days)

        movements = list(get_stock_ledger().get_history(item.id, store.id, since=since))
        paginator = StockHistoryPagination()
        page = paginator.paginate_queryset(movements, request, view=self)
        return paginator.get_paginated_response(StockMovementSerializer(page, many=True).data)


class MovementReverseView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "movement.reverse"}

    def post(self, request, movement_id):
        serializer = MovementReverseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        original = StockMovement.objects.select_related("store").filter(pk=movement_id).first()
        if original is not None:
            ensure_store_access(request.user, original.store)

        ledger = get_stock_ledger()
        reversal = run_with_conflict_retry(ledger.reverse_movement, movement_id, created_by=request.user)
        payload = StockMovementSerializer(reversal).data
        create_audit_log_from_request(
            request,
            action="stock_movement.reverse",
            entity="stock_movement",
            entity_id=reversal.id,
            before_snapshot={"reverses": str(movement_id), "notes": serializer.validated_data["notes"]},
            after_snapshot=payload,
            store=reversal.store,
        )
        return Response(payload, status=status.HTTP_201_CREATED)


class PricingPreviewView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "masters.view"}

    def post(self, request):
        serializer = PricingPreviewSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        price = price_line(data["quantity"], data["unit_price"], serializer.discount(), data["tax_method"], data["tax_rate"])
        return Response({name: str(value) for name, value in asdict(price.rounded()).items()})
