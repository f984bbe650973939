import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from django.db import transaction
from django.db.models import ProtectedError
from django.shortcuts import get_object_or_404
from retailpos.core import events
from retailpos.core.cache_utils import cached_query, PRODUCTS_LIST_CACHE_TTL
from retailpos.core.exceptions import SaleError
from retailpos.core.utils import create_audit_log
from retailpos.inventory import ledger
from .filters import ProductFilter
from .models import Product
from .serializers import ProductSerializer

logger = logging.getLogger(__name__)


@cached_query('products', cache_ttl=PRODUCTS_LIST_CACHE_TTL)
def product_list_data(params):
    queryset = Product.objects.select_related('stock').all()
    filterset = ProductFilter(dict(params), queryset=queryset)
    return ProductSerializer(filterset.qs, many=True).data


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def product_list_create(request):
    """List products or create a new product with its opening stock"""
    if request.method == 'GET':
        params = tuple(sorted(
            (key, value) for key, value in request.query_params.items()
            if key in ProductFilter.base_filters
        ))
        response = Response(product_list_data(params))
        response['Cache-Control'] = 'private, max-age=120'
        return response

    serializer = ProductSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

    opening_stock = serializer.validated_data.get('opening_stock', 0)
    try:
        with transaction.atomic():
            product = serializer.save()
            ledger.open_stock(product, opening_stock, user=request.user)
            create_audit_log(
                action='create',
                model_name='Product',
                object_id=product.id,
                object_reference=product.reference_number,
                changes={'name': product.name, 'price': str(product.price), 'opening_stock': opening_stock},
                user=request.user,
            )
            events.notify_data_changed('catalog', {events.PRODUCTS, events.STOCK}, product_ids=[product.id])
    except SaleError as e:
        return Response(e.as_dict(), status=e.status_code)

    logger.info(f"Product {product.id} created with opening stock {opening_stock}")
    product = Product.objects.select_related('stock').get(pk=product.pk)
    return Response(ProductSerializer(product).data, status=status.HTTP_201_CREATED)


@api_view(['GET', 'PATCH', 'DELETE'])
@permission_classes([IsAuthenticated])
def product_detail(request, pk):
    """Retrieve, update or delete a product"""
    product = get_object_or_404(Product.objects.select_related('stock'), pk=pk)

    if request.method == 'GET':
        return Response(ProductSerializer(product).data)

    elif request.method == 'PATCH':
        serializer = ProductSerializer(product, data=request.data, partial=True)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        with transaction.atomic():
            serializer.save()
            create_audit_log(
                action='update',
                model_name='Product',
                object_id=product.id,
                object_reference=product.reference_number,
                changes={key: str(value) for key, value in serializer.validated_data.items() if key != 'opening_stock'},
                user=request.user,
            )
            events.notify_data_changed('catalog', {events.PRODUCTS}, product_ids=[product.id])
        return Response(serializer.data)

    else:  # DELETE
        product_id = product.id
        try:
            with transaction.atomic():
                product.delete()
                create_audit_log(
                    action='delete',
                    model_name='Product',
                    object_id=product_id,
                    changes={'name': product.name},
                    user=request.user,
                )
                events.notify_data_changed('catalog', {events.PRODUCTS, events.STOCK}, product_ids=[product_id])
        except ProtectedError:
            return Response(
                {'error': 'Product has been sold and cannot be deleted; mark it inactive instead'},
                status=status.HTTP_400_BAD_REQUEST,
            )
        return Response(status=status.HTTP_204_NO_CONTENT)
