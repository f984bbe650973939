from rest_framework import serializers
from .models import Stock, StockMovement


class StockSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source='product.name', read_only=True)
    product_reference_number = serializers.CharField(source='product.reference_number', read_only=True)

    class Meta:
        model = Stock
        fields = ['id', 'product', 'product_name', 'product_reference_number', 'quantity', 'updated_at']
        read_only_fields = fields


class StockMovementSerializer(serializers.ModelSerializer):
    invoice_number = serializers.CharField(source='sale.invoice_number', read_only=True, default=None)

    class Meta:
        model = StockMovement
        fields = ['id', 'product', 'delta', 'reason', 'sale', 'invoice_number', 'sale_item_id', 'notes', 'created_by', 'created_at']
        read_only_fields = fields


class StockAdjustmentSerializer(serializers.Serializer):
    """Payload for a manual stock correction"""
    delta = serializers.IntegerField()
    notes = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')

    def validate_delta(self, value):
        if value == 0:
            raise serializers.ValidationError('delta must be non-zero')
        return value
