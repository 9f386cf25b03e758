import logging

from django.conf import settings
from django.core.cache import caches

from core.models import SystemSetting

logger = logging.getLogger(__name__)


class SettingsCache:
    """Time-bounded read-through cache over ``SystemSetting`` rows.

    The parsed settings live under one key of a Django cache backend for
    ``ttl_seconds``. One instance is owned by the ``core`` app config and
    handed to the consumers that need runtime settings. Writers must call
    ``invalidate()`` (``save()`` does it for them) so the next read reloads
    from the database.
    """

    cache_key = "core:system-settings"

    def __init__(self, backend=None, ttl_seconds=None, cache_alias="default"):
        if ttl_seconds is None:
            ttl_seconds = getattr(settings, "SETTINGS_CACHE_TTL_SECONDS", 300)
        self.ttl_seconds = ttl_seconds
        self.cache_alias = cache_alias
        self._backend = backend

    @property
    def backend(self):
        # Resolved per call: the cache handler hands out one connection per thread.
        return self._backend if self._backend is not None else caches[self.cache_alias]

    def _load(self):
        values = {row.key: row.parsed_value() for row in SystemSetting.objects.all()}
        logger.debug("settings_cache_loaded keys=%s", len(values))
        return values

    def all(self):
        values = self.backend.get(self.cache_key)
        if values is None:
            values = self._load()
            self.backend.set(self.cache_key, values, self.ttl_seconds)
        return dict(values)

    def get(self, key, default=None):
        return self.all().get(key, default)

    def get_bool(self, key, default=False):
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in SystemSetting.TRUE_VALUES
        return bool(value)

    def invalidate(self):
        self.backend.delete(self.cache_key)

    def save(self, key, value, value_type=SystemSetting.ValueType.STRING, description="", user=None):
        setting, _ = SystemSetting.objects.update_or_create(
            key=key,
            defaults={
                "value": str(value),
                "value_type": value_type,
                "description": description,
                "updated_by": user,
            },
        )
        self.invalidate()
        return setting
