from decimal import Decimal, InvalidOperation

from rest_framework import serializers
from .models import Setting, AuditLog
from .utils import TAX_RATE_SETTING_KEY


class SettingSerializer(serializers.ModelSerializer):
    class Meta:
        model = Setting
        fields = ['id', 'key', 'value', 'description', 'updated_at']
        read_only_fields = ['updated_at']

    def validate(self, attrs):
        key = attrs.get('key', getattr(self.instance, 'key', None))
        value = attrs.get('value', getattr(self.instance, 'value', None))
        if key == TAX_RATE_SETTING_KEY:
            try:
                rate = Decimal(str(value).strip())
            except InvalidOperation:
                raise serializers.ValidationError({'value': 'tax_rate must be a decimal fraction, e.g. 0.05'})
            if rate < 0 or rate >= 1:
                raise serializers.ValidationError({'value': 'tax_rate must be between 0 and 1'})
        return attrs


class AuditLogSerializer(serializers.ModelSerializer):
    username = serializers.CharField(source='user.username', read_only=True)

    class Meta:
        model = AuditLog
        fields = ['id', 'user', 'username', 'action', 'model_name', 'object_id', 'object_reference', 'changes', 'created_at']
