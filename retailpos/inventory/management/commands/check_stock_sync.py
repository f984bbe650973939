"""
Django management command to check that stock levels agree with the stock
movement history and with the line items of every sale
"""
from django.core.management.base import BaseCommand, CommandError
from django.db.models import Sum
from retailpos.inventory.models import Stock, StockMovement
from retailpos.pos.models import SaleItem


class Command(BaseCommand):
    help = 'Check Stock quantities against stock movements and sale line items'

    def add_arguments(self, parser):
        parser.add_argument(
            '--product-id',
            type=int,
            help='Check specific product ID only',
        )
        parser.add_argument(
            '--show-all',
            action='store_true',
            help='Show all products, not just discrepancies',
        )
        parser.add_argument(
            '--skip-sales',
            action='store_true',
            help='Do not compare sale line items with sale movements',
        )
        parser.add_argument(
            '--fail-on-discrepancy',
            action='store_true',
            help='Exit with an error when any discrepancy is found',
        )

    def handle(self, *args, **options):
        product_id = options.get('product_id')
        show_all = options.get('show_all', False)

        self.stdout.write("=" * 80)
        self.stdout.write(self.style.SUCCESS("STOCK vs MOVEMENT LEDGER"))
        self.stdout.write("=" * 80)

        stock_rows = Stock.objects.select_related('product').order_by('product_id')
        movements = StockMovement.objects.all()
        if product_id:
            stock_rows = stock_rows.filter(product_id=product_id)
            movements = movements.filter(product_id=product_id)

        movement_totals = dict(
            movements.values('product_id').annotate(total=Sum('delta')).values_list('product_id', 'total')
        )

        ledger_discrepancies = []
        for stock in stock_rows:
            expected = movement_totals.get(stock.product_id) or 0
            difference = stock.quantity - expected
            if difference:
                ledger_discrepancies.append((stock, expected, difference))
            if show_all or difference:
                self.stdout.write(f"Product: {stock.product.name} (ID: {stock.product_id})")
                self.stdout.write(f"  Stock: {stock.quantity}  Movements: {expected}  Difference: {difference:+d}")

        sale_discrepancies = []
        if not options.get('skip_sales'):
            self.stdout.write("")
            self.stdout.write("=" * 80)
            self.stdout.write(self.style.SUCCESS("SALE ITEMS vs SALE MOVEMENTS"))
            self.stdout.write("=" * 80)
            sale_discrepancies = self._check_sales(product_id)
            for sale_id, pid, sold, moved in sale_discrepancies:
                self.stdout.write(
                    f"  Sale {sale_id}, product {pid}: items hold {sold}, movements took {-moved}"
                )

        self.stdout.write("")
        self.stdout.write("=" * 80)
        total = len(ledger_discrepancies) + len(sale_discrepancies)
        if total:
            self.stdout.write(self.style.WARNING(
                f"{len(ledger_discrepancies)} stock/movement and {len(sale_discrepancies)} sale/movement discrepancies"
            ))
            if options.get('fail_on_discrepancy'):
                raise CommandError(f"{total} stock discrepancies found")
        else:
            self.stdout.write(self.style.SUCCESS("No discrepancies found"))

    def _check_sales(self, product_id=None):
        """Per (sale, product): quantity on line items must equal what sale movements removed"""
        items = SaleItem.objects.all()
        moves = StockMovement.objects.filter(sale__isnull=False)
        if product_id:
            items = items.filter(product_id=product_id)
            moves = moves.filter(product_id=product_id)

        sold = {
            (row['sale_id'], row['product_id']): row['total']
            for row in items.values('sale_id', 'product_id').annotate(total=Sum('quantity'))
        }
        moved = {
            (row['sale_id'], row['product_id']): row['total']
            for row in moves.values('sale_id', 'product_id').annotate(total=Sum('delta'))
        }

        discrepancies = []
        for key in sorted(set(sold) | set(moved)):
            quantity = sold.get(key, 0)
            delta = moved.get(key, 0)
            if quantity != -delta:
                discrepancies.append((key[0], key[1], quantity, delta))
        return discrepancies
