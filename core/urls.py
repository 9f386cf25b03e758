from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import AuditLogViewSet, StoreViewSet, SystemSettingViewSet, healthz, readyz

router = DefaultRouter()
router.register(r"stores", StoreViewSet, basename="store")
router.register(r"system-settings", SystemSettingViewSet, basename="system-setting")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]
