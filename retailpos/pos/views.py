from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from django.core.paginator import Paginator
from retailpos.core.exceptions import SaleError
from .filters import SaleFilter
from .serializers import SaleSerializer, SaleListSerializer, SaleWriteSerializer
from . import services


def sale_error_response(error):
    """Map a sales engine error onto an HTTP response"""
    return Response(error.as_dict(), status=error.status_code)


@api_view(['GET', 'POST'])
@permission_classes([IsAuthenticated])
def sale_list_create(request):
    """List sales (filtered, paginated) or record a new sale"""
    if request.method == 'GET':
        filters = {name: request.query_params.get(name) for name in SaleFilter.base_filters}
        try:
            queryset = services.list_sales(**filters)
        except SaleError as e:
            return sale_error_response(e)

        try:
            page = int(request.query_params.get('page', 1))
            limit = int(request.query_params.get('limit', 50))
        except ValueError:
            return Response({'error': 'page and limit must be integers'}, status=status.HTTP_400_BAD_REQUEST)
        limit = max(1, min(limit, 500))

        paginator = Paginator(queryset, limit)
        page_obj = paginator.get_page(page)

        serializer = SaleListSerializer(page_obj, many=True)
        return Response({
            'results': serializer.data,
            'count': paginator.count,
            'next': page_obj.next_page_number() if page_obj.has_next() else None,
            'previous': page_obj.previous_page_number() if page_obj.has_previous() else None,
            'page': page_obj.number,
            'page_size': limit,
            'total_pages': paginator.num_pages,
        })

    serializer = SaleWriteSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    header, items, _original = serializer.split()
    try:
        sale = services.create_sale(header, items, user=request.user)
    except SaleError as e:
        return sale_error_response(e)
    return Response(SaleSerializer(sale).data, status=status.HTTP_201_CREATED)


@api_view(['GET', 'PUT'])
@permission_classes([IsAuthenticated])
def sale_detail(request, pk):
    """Retrieve or edit a sale"""
    if request.method == 'GET':
        try:
            sale = services.get_sale(pk)
        except SaleError as e:
            return sale_error_response(e)
        if sale is None:
            return Response({'error': 'Sale not found'}, status=status.HTTP_404_NOT_FOUND)
        return Response(SaleSerializer(sale).data)

    serializer = SaleWriteSerializer(data=request.data)
    if not serializer.is_valid():
        return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
    header, items, original_items = serializer.split()
    try:
        sale = services.update_sale(pk, header, items, original_items, user=request.user)
    except SaleError as e:
        return sale_error_response(e)
    return Response(SaleSerializer(sale).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def sale_by_invoice(request, invoice_number):
    """Load a sale by its invoice number, e.g. for the edit screen"""
    try:
        sale = services.get_sale_by_invoice_number(invoice_number)
    except SaleError as e:
        return sale_error_response(e)
    if sale is None:
        return Response({'error': 'Sale not found'}, status=status.HTTP_404_NOT_FOUND)
    return Response(SaleSerializer(sale).data)
