from django.apps import AppConfig


class CoreConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "core"

    def ready(self):
        from core.settings_cache import SettingsCache

        self.settings_cache = SettingsCache()


def get_settings_cache():
    from django.apps import apps

    return apps.get_app_config("core").settings_cache
