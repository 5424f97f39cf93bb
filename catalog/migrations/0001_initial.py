# Generated manually

from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Bundle',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('network', models.CharField(choices=[('MTN', 'MTN'), ('TELECEL', 'Telecel'), ('AIRTELTIGO', 'AirtelTigo')], max_length=16)),
                ('name', models.CharField(max_length=100)),
                ('data_amount', models.CharField(max_length=20)),
                ('data_amount_mb', models.PositiveIntegerField(default=0)),
                ('validity', models.CharField(blank=True, max_length=50)),
                ('cost_price', models.DecimalField(decimal_places=2, max_digits=10)),
                ('retail_price', models.DecimalField(decimal_places=2, max_digits=10)),
                ('vtu_code', models.CharField(max_length=64)),
                ('is_active', models.BooleanField(default=True)),
                ('sort_order', models.IntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['network', 'sort_order', 'retail_price'],
                'indexes': [models.Index(fields=['network', 'is_active'], name='catalog_bundle_net_active_idx')],
            },
        ),
    ]
