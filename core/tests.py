from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.cache.backends.locmem import LocMemCache
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.management import call_command
from django.db.models import ProtectedError
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIClient

from common.exceptions import custom_exception_handler
from core.apps import get_settings_cache
from core.models import AuditLog, Store, SystemSetting
from core.settings_cache import SettingsCache
from inventory.exceptions import InsufficientStockError
from inventory.ledger import StockLedger
from inventory.models import Item, StoreItemStock


class SettingsCacheTests(TestCase):
    def setUp(self):
        self.backend = LocMemCache("settings-cache-tests", {})
        self.backend.clear()
        self.addCleanup(self.backend.clear)
        self.cache = SettingsCache(backend=self.backend, ttl_seconds=60)
        SystemSetting.objects.create(key="allow_negative_stock", value="true", value_type=SystemSetting.ValueType.BOOLEAN)

    def test_values_are_parsed_by_type(self):
        SystemSetting.objects.create(key="receipt_footer", value="Thanks!")
        SystemSetting.objects.create(key="max_lines", value="40", value_type=SystemSetting.ValueType.INTEGER)
        SystemSetting.objects.create(key="vat", value="14.5", value_type=SystemSetting.ValueType.DECIMAL)

        self.assertIs(self.cache.get("allow_negative_stock"), True)
        self.assertEqual(self.cache.get("receipt_footer"), "Thanks!")
        self.assertEqual(self.cache.get("max_lines"), 40)
        self.assertEqual(self.cache.get("vat"), Decimal("14.5"))
        self.assertEqual(self.cache.get("missing", "fallback"), "fallback")

    def test_reads_are_served_from_cache_backend(self):
        self.assertTrue(self.cache.get_bool("allow_negative_stock"))
        SystemSetting.objects.filter(key="allow_negative_stock").update(value="false")

        self.assertEqual(self.backend.get(SettingsCache.cache_key), {"allow_negative_stock": True})
        self.assertTrue(self.cache.get_bool("allow_negative_stock"))

    def test_zero_ttl_reloads_every_read(self):
        cache = SettingsCache(backend=self.backend, ttl_seconds=0)
        self.assertTrue(cache.get_bool("allow_negative_stock"))

        SystemSetting.objects.filter(key="allow_negative_stock").update(value="false")

        self.assertFalse(cache.get_bool("allow_negative_stock"))

    def test_invalidate_forces_reload(self):
        self.assertTrue(self.cache.get_bool("allow_negative_stock"))
        SystemSetting.objects.filter(key="allow_negative_stock").update(value="no")

        self.cache.invalidate()

        self.assertIsNone(self.backend.get(SettingsCache.cache_key))
        self.assertFalse(self.cache.get_bool("allow_negative_stock"))

    def test_save_writes_and_invalidates(self):
        self.assertTrue(self.cache.get_bool("allow_negative_stock"))

        self.cache.save("allow_negative_stock", "false", value_type=SystemSetting.ValueType.BOOLEAN)

        self.assertFalse(self.cache.get_bool("allow_negative_stock"))
        self.assertEqual(SystemSetting.objects.get(key="allow_negative_stock").value, "false")

    def test_ledger_reads_negative_stock_toggle_through_cache(self):
        self.assertTrue(StockLedger(settings_cache=self.cache).allows_negative_stock())

        self.cache.save("allow_negative_stock", "off", value_type=SystemSetting.ValueType.BOOLEAN)

        self.assertFalse(StockLedger(settings_cache=self.cache).allows_negative_stock())


class SystemSettingApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.store = Store.objects.create(code="S1", name="Store 1")
        self.admin = self.user_model.objects.create_user(
            username="settings-admin",
            password="pass1234",
            role=self.user_model.Role.ADMIN,
            store=self.store,
        )
        self.cashier = self.user_model.objects.create_user(
            username="settings-cashier",
            password="pass1234",
            role=self.user_model.Role.CASHIER,
            store=self.store,
        )
        get_settings_cache().invalidate()
        self.addCleanup(get_settings_cache().invalidate)

    def test_admin_write_invalidates_shared_cache(self):
        cache = get_settings_cache()
        self.assertFalse(cache.get_bool("allow_negative_stock"))
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/system-settings/",
            {"key": "allow_negative_stock", "value": "true", "value_type": "boolean"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertIs(response.json()["parsed_value"], True)
        self.assertTrue(cache.get_bool("allow_negative_stock"))
        self.assertTrue(AuditLog.objects.filter(action="setting.create", entity="system_setting").exists())

    def test_invalid_typed_value_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/system-settings/",
            {"key": "allow_negative_stock", "value": "maybe", "value_type": "boolean"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("value", payload["errors"])
        self.assertFalse(SystemSetting.objects.exists())

    def test_cashier_cannot_manage_settings(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/system-settings/")

        self.assertEqual(response.status_code, 403)
        payload = response.json()
        self.assertEqual(payload["code"], "permission_denied")
        self.assertEqual(payload["status"], 403)


class StoreAccessTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.store_a = Store.objects.create(code="SA", name="Store A")
        self.store_b = Store.objects.create(code="SB", name="Store B")
        self.cashier = self.user_model.objects.create_user(
            username="store-cashier",
            password="pass1234",
            store=self.store_a,
        )
        self.admin = self.user_model.objects.create_user(
            username="store-admin",
            password="pass1234",
            role="admin",
            store=self.store_a,
        )

    def test_cashier_sees_only_own_store(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/stores/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = {store["id"] for store in payload["results"]}
        self.assertEqual(ids, {str(self.store_a.id)})

    def test_admin_sees_every_store(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/stores/")

        self.assertEqual(response.json()["count"], 2)

    def test_cashier_cannot_create_store(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/stores/", {"code": "SC", "name": "Store C"}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_delete_deactivates_store(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/stores/{self.store_b.id}/")

        self.assertEqual(response.status_code, 204)
        self.store_b.refresh_from_db()
        self.assertFalse(self.store_b.is_active)

    def test_anonymous_request_gets_error_envelope(self):
        response = self.client.get("/api/v1/stores/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.store = Store.objects.create(code="AL", name="Audit")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            store=self.store,
            role="admin",
        )

    def test_store_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.post(
            "/api/v1/stores/",
            {"code": "AUD", "name": "Audited Store"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        log = AuditLog.objects.get(action="store.create", entity="store", request_id="req-123")
        self.assertEqual(log.actor_id, self.admin.id)
        self.assertEqual(log.after_snapshot["code"], "AUD")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", store=self.store, actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_and_export(self):
        AuditLog.objects.create(action="grn.post", entity="grn", store=self.store, actor=self.admin)
        AuditLog.objects.create(action="sale.post", entity="sale", store=self.store, actor=self.admin)
        self.client.force_authenticate(user=self.admin)

        filtered = self.client.get("/api/v1/admin/audit-logs/?entity=grn")
        export = self.client.get("/api/v1/admin/audit-logs/export/?action=sale.post")

        self.assertEqual(filtered.json()["count"], 1)
        self.assertEqual(filtered.json()["results"][0]["store_code"], "AL")
        self.assertEqual(export.status_code, 200)
        self.assertEqual(export["Content-Type"], "text/csv")
        body = export.content.decode()
        self.assertIn("sale.post", body)
        self.assertNotIn("grn.post", body)


class AuthTokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.store = Store.objects.create(code="TK", name="Token Store")
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="Token.User@Example.com",
            password="pass1234",
            role="supervisor",
            store=self.store,
        )

    def test_token_by_username(self):
        response = self.client.post("/api/v1/token/", {"username": "token-user", "password": "pass1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_token_by_email_is_case_insensitive(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "TOKEN.user@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)

    def test_wrong_password_is_rejected(self):
        response = self.client.post("/api/v1/token/", {"username": "token-user", "password": "nope"}, format="json")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class HealthCheckTests(TestCase):
    def test_healthz_echoes_request_id(self):
        response = APIClient().get("/api/v1/healthz/", HTTP_X_REQUEST_ID="health-1")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "request_id": "health-1"})
        self.assertEqual(response["X-Request-ID"], "health-1")

    def test_readyz_checks_database(self):
        response = APIClient().get("/api/v1/readyz/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")


class SeedDemoDataCommandTests(TestCase):
    def test_seed_is_idempotent(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        self.assertEqual(Store.objects.count(), 2)
        cola = Item.objects.get(code="ITM-COLA")
        stock = StoreItemStock.objects.get(item=cola, store__code="MAIN")
        self.assertEqual(stock.quantity_on_hand, Decimal("120"))
        self.assertTrue(get_user_model().objects.filter(username="cashier", role="cashier").exists())


class ExceptionHandlerTests(SimpleTestCase):
    def test_django_validation_error_uses_envelope(self):
        response = custom_exception_handler(DjangoValidationError({"code": ["Already used."]}), {})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "validation_error")
        self.assertEqual(response.data["errors"], {"code": ["Already used."]})

    def test_protected_delete_is_conflict(self):
        response = custom_exception_handler(ProtectedError("referenced", set()), {})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["code"], "protected_record")

    def test_stock_error_context_becomes_errors(self):
        exc = InsufficientStockError("Not enough stock.", available=Decimal("2.000"), requested=Decimal("5"))

        response = custom_exception_handler(exc, {})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data["message"], "Not enough stock.")
        self.assertEqual(response.data["errors"], {"available": "2.000", "requested": "5"})
