from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from django.shortcuts import get_object_or_404
from retailpos.catalog.models import Product
from retailpos.core.exceptions import SaleError
from .models import Stock, StockMovement
from .serializers import StockSerializer, StockMovementSerializer, StockAdjustmentSerializer
from . import ledger


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stock_list(request):
    """List stock levels, optionally only products at or below a threshold"""
    queryset = Stock.objects.select_related('product').order_by('product__name')
    below = request.query_params.get('below', None)
    if below is not None:
        try:
            queryset = queryset.filter(quantity__lte=int(below))
        except ValueError:
            return Response({'error': 'below must be an integer'}, status=status.HTTP_400_BAD_REQUEST)
    return Response(StockSerializer(queryset, many=True).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stock_movements(request, product_id):
    """Movement history of one product, newest first"""
    product = get_object_or_404(Product, pk=product_id)
    queryset = StockMovement.objects.filter(product=product).select_related('sale')
    limit = request.query_params.get('limit', 100)
    try:
        limit = max(1, min(int(limit), 1000))
    except ValueError:
        limit = 100
    return Response(StockMovementSerializer(queryset[:limit], many=True).data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def stock_adjust(request, product_id):
    """Apply a manual stock correction to a product"""
    product = get_object_or_404(Product, pk=product_id)
    serializer = StockAdjustmentSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    try:
        movement = ledger.adjust_stock(
            product.id,
            serializer.validated_data['delta'],
            user=request.user,
            notes=serializer.validated_data['notes'],
        )
    except SaleError as e:
        return Response(e.as_dict(), status=e.status_code)

    stock = Stock.objects.select_related('product').get(product=product)
    return Response({
        'stock': StockSerializer(stock).data,
        'movement': StockMovementSerializer(movement).data,
    }, status=status.HTTP_201_CREATED)
