from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import (
    DispatchViewSet,
    GoodsReceivedNoteViewSet,
    ItemViewSet,
    MovementReverseView,
    OpeningStockViewSet,
    PricingPreviewView,
    PurchaseReturnViewSet,
    StockAdjustmentViewSet,
    StockHistoryView,
    StockProjectionView,
    StockReportView,
    SupplierViewSet,
)

router = DefaultRouter()
router.register(r"items", ItemViewSet, basename="item")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"opening-stock", OpeningStockViewSet, basename="opening-stock")
router.register(r"grns", GoodsReceivedNoteViewSet, basename="grn")
router.register(r"purchase-returns", PurchaseReturnViewSet, basename="purchase-return")
router.register(r"stock-adjustments", StockAdjustmentViewSet, basename="stock-adjustment")
router.register(r"dispatches", DispatchViewSet, basename="dispatch")

urlpatterns = router.urls + [
    path("stock/current/", StockReportView.as_view(), name="stock-current"),
    path("stock/projection/", StockProjectionView.as_view(), name="stock-projection"),
    path("stock/history/", StockHistoryView.as_view(), name="stock-history"),
    path("stock/movements/<uuid:movement_id>/reverse/", MovementReverseView.as_view(), name="stock-movement-reverse"),
    path("pricing/preview/", PricingPreviewView.as_view(), name="pricing-preview"),
]
