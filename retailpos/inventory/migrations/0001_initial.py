# Generated manually
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('catalog', '0001_initial'),
        ('pos', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Stock',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('quantity', models.IntegerField(default=0)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('product', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='stock', to='catalog.product')),
            ],
            options={
                'db_table': 'stock',
                'constraints': [
                    models.CheckConstraint(condition=models.Q(quantity__gte=0), name='stock_quantity_non_negative'),
                ],
            },
        ),
        migrations.CreateModel(
            name='StockMovement',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('delta', models.IntegerField()),
                ('reason', models.CharField(choices=[('opening', 'Opening Stock'), ('sale', 'Sold'), ('sale_item_added', 'Sale Edit: Item Added'), ('sale_item_changed', 'Sale Edit: Quantity Changed'), ('sale_item_removed', 'Sale Edit: Item Removed'), ('adjustment', 'Manual Adjustment')], max_length=30)),
                ('sale_item_id', models.BigIntegerField(blank=True, null=True)),
                ('notes', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='stock_movements', to=settings.AUTH_USER_MODEL)),
                ('product', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='stock_movements', to='catalog.product')),
                ('sale', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='stock_movements', to='pos.sale')),
            ],
            options={
                'db_table': 'stock_movements',
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['product', 'created_at'], name='idx_stockmove_product_created'),
                ],
            },
        ),
    ]
