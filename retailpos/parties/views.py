from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.response import Response
from rest_framework.permissions import IsAuthenticated
from django.db.models import Q
from retailpos.core.cache_utils import cached_query, CUSTOMERS_LIST_CACHE_TTL
from retailpos.core.exceptions import SaleError
from .models import Customer
from .serializers import CustomerSerializer
from .directory import find_customer_by_phone


@cached_query('customers', cache_ttl=CUSTOMERS_LIST_CACHE_TTL)
def customer_list_data(search):
    queryset = Customer.objects.all().order_by('-created_at')
    if search:
        queryset = queryset.filter(Q(name__icontains=search) | Q(phone__icontains=search))
    return CustomerSerializer(queryset, many=True).data


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def customer_list(request):
    """List customers, optionally filtered by name or phone"""
    search = request.query_params.get('search', '').strip()
    response = Response(customer_list_data(search))
    response['Cache-Control'] = 'private, max-age=300, stale-while-revalidate=600'
    return response


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def customer_lookup(request):
    """Find a customer by phone so the checkout can pre-fill name and email"""
    phone = request.query_params.get('phone', '')
    if not phone.strip():
        return Response({'error': 'phone parameter is required'}, status=status.HTTP_400_BAD_REQUEST)
    try:
        customer = find_customer_by_phone(phone)
    except SaleError as e:
        return Response(e.as_dict(), status=e.status_code)
    if customer is None:
        return Response({'error': 'Customer not found'}, status=status.HTTP_404_NOT_FOUND)
    return Response(CustomerSerializer(customer).data)
