from django.urls import path
from .views import stock_list, stock_movements, stock_adjust

urlpatterns = [
    path('stock/', stock_list, name='stock-list'),
    path('stock/<int:product_id>/movements/', stock_movements, name='stock-movements'),
    path('stock/<int:product_id>/adjust/', stock_adjust, name='stock-adjust'),
]
