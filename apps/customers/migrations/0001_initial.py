# Generated migration for customer and contract membership models

import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Customer',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('name', models.CharField(max_length=255)),
                ('customer_type', models.CharField(choices=[('individual', 'Individual'), ('company', 'Company'), ('reseller', 'Reseller'), ('ngo', 'NGO/Association')], default='company', max_length=20)),
                ('status', models.CharField(choices=[('active', 'Active'), ('inactive', 'Inactive'), ('suspended', 'Suspended'), ('prospect', 'Prospect')], default='active', max_length=20)),
                ('company_name', models.CharField(blank=True, max_length=255)),
                ('primary_email', models.EmailField(blank=True, max_length=254)),
                ('country_code', models.CharField(blank=True, help_text='ISO 3166-1 alpha-2', max_length=2)),
                ('industry', models.CharField(blank=True, max_length=100)),
                ('tags', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_customers', to=settings.AUTH_USER_MODEL)),
                ('deleted_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='deleted_customers', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Customer',
                'verbose_name_plural': 'Customers',
                'db_table': 'customers',
                'indexes': [
                    models.Index(fields=['status'], name='idx_customer_status'),
                    models.Index(fields=['customer_type'], name='idx_customer_type'),
                    models.Index(fields=['country_code'], name='idx_customer_country'),
                    models.Index(fields=['deleted_at'], name='idx_customer_deleted'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CustomerContract',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('contract_reference', models.CharField(db_index=True, max_length=100)),
                ('starts_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('ends_at', models.DateTimeField(blank=True, null=True)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='contracts', to='customers.customer')),
            ],
            options={
                'verbose_name': 'Customer Contract',
                'verbose_name_plural': 'Customer Contracts',
                'db_table': 'customer_contracts',
                'constraints': [
                    models.UniqueConstraint(fields=('customer', 'contract_reference'), name='uniq_customer_contract'),
                ],
            },
        ),
    ]
