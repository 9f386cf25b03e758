from rest_framework.routers import DefaultRouter

from sales.views import CustomerViewSet, QuotationViewSet, SaleViewSet, SalesReturnViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customer")
router.register(r"sales", SaleViewSet, basename="sale")
router.register(r"sales-returns", SalesReturnViewSet, basename="sales-return")
router.register(r"quotations", QuotationViewSet, basename="quotation")

urlpatterns = router.urls
