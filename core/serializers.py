from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import serializers
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from core.models import AuditLog, Store, SystemSetting

User = get_user_model()


class EmailOrUsernameTokenObtainPairSerializer(TokenObtainPairSerializer):
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["role"] = getattr(user, "role", None)
        token["store_id"] = str(user.store_id) if user.store_id else None
        token["is_superuser"] = user.is_superuser
        return token

    def validate(self, attrs):
        username = attrs.get("username", "")
        if username and "@" in username:
            try:
                user = User.objects.get(email__iexact=username)
                attrs["username"] = user.get_username()
            except User.DoesNotExist:
                pass
        return super().validate(attrs)


class StoreSerializer(serializers.ModelSerializer):
    class Meta:
        model = Store
        fields = ["id", "code", "name", "address", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class SystemSettingSerializer(serializers.ModelSerializer):
    parsed_value = serializers.SerializerMethodField()

    class Meta:
        model = SystemSetting
        fields = ["id", "key", "value", "value_type", "parsed_value", "description", "updated_by", "updated_at"]
        read_only_fields = ["id", "parsed_value", "updated_by", "updated_at"]

    def get_parsed_value(self, obj):
        return obj.parsed_value()

    def validate(self, attrs):
        candidate = SystemSetting(
            value=attrs.get("value", getattr(self.instance, "value", "")),
            value_type=attrs.get("value_type", getattr(self.instance, "value_type", SystemSetting.ValueType.STRING)),
        )
        try:
            candidate.clean()
        except DjangoValidationError as exc:
            raise serializers.ValidationError(exc.message_dict) from exc
        return attrs


class AuditLogSerializer(serializers.ModelSerializer):
    actor_username = serializers.CharField(source="actor.username", read_only=True)
    store_code = serializers.CharField(source="store.code", read_only=True)

    class Meta:
        model = AuditLog
        fields = [
            "id",
            "actor",
            "actor_username",
            "store",
            "store_code",
            "action",
            "entity",
            "entity_id",
            "before_snapshot",
            "after_snapshot",
            "request_id",
            "created_at",
        ]
        read_only_fields = fields
