# Generated migration for pricing rules, usage pools, buckets, alerts and rated usage

import uuid
from decimal import Decimal

import django.core.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('customers', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='PricingRule',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(help_text='Rule code, unique per version', max_length=50)),
                ('name', models.CharField(max_length=200)),
                ('version', models.PositiveIntegerField(default=1)),
                ('scope', models.CharField(choices=[('global', 'Global'), ('client', 'Client'), ('group', 'Client Group'), ('contract', 'Contract')], default='global', max_length=20)),
                ('contract_reference', models.CharField(blank=True, help_text='Contract this rule applies to (contract scope)', max_length=100)),
                ('client_criteria', models.JSONField(blank=True, default=dict, help_text='Client predicate for group scope')),
                ('usage_type', models.CharField(help_text="Usage type (e.g., 'voice_minutes', 'bandwidth_gb')", max_length=50)),
                ('service_types', models.JSONField(blank=True, default=list, help_text='Service types; empty applies to all')),
                ('pricing_model', models.CharField(choices=[('flat_rate', 'Flat Rate'), ('usage_based', 'Usage Based'), ('tiered', 'Tiered'), ('block', 'Block'), ('hybrid', 'Hybrid')], default='usage_based', max_length=20)),
                ('base_rate', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('setup_fee', models.DecimalField(decimal_places=4, default=Decimal('0'), max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('monthly_fee', models.DecimalField(decimal_places=4, default=Decimal('0'), max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('minimum_charge', models.DecimalField(decimal_places=4, default=Decimal('0'), max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('block_size', models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ('block_rate', models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ('time_based_rates', models.JSONField(blank=True, default=dict)),
                ('geographic_rates', models.JSONField(blank=True, default=dict)),
                ('volume_discounts', models.JSONField(blank=True, default=list, help_text='Ordered; first match wins')),
                ('overage_rate', models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ('overage_policy', models.CharField(choices=[('charge_overage', 'Charge Overage Rate'), ('block', 'Block Usage'), ('bill_at_base', 'Bill at Base Rate')], default='charge_overage', max_length=20)),
                ('is_promotional', models.BooleanField(default=False)),
                ('promotion_starts_at', models.DateTimeField(blank=True, null=True)),
                ('promotion_ends_at', models.DateTimeField(blank=True, null=True)),
                ('is_contract_override', models.BooleanField(default=False)),
                ('rule_priority', models.PositiveIntegerField(default=100, help_text='Lower numbers are evaluated first')),
                ('effective_date', models.DateTimeField(default=django.utils.timezone.now)),
                ('expiry_date', models.DateTimeField(blank=True, help_text='Empty means open-ended', null=True)),
                ('approval_status', models.CharField(choices=[('draft', 'Draft'), ('pending_approval', 'Pending Approval'), ('approved', 'Approved'), ('rejected', 'Rejected')], default='draft', max_length=20)),
                ('is_active', models.BooleanField(default=False)),
                ('total_applications', models.PositiveBigIntegerField(default=0)),
                ('total_revenue_generated', models.DecimalField(decimal_places=4, default=Decimal('0'), max_digits=20)),
                ('last_applied_at', models.DateTimeField(blank=True, null=True)),
                ('change_history', models.JSONField(blank=True, default=list)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('created_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='created_pricing_rules', to=settings.AUTH_USER_MODEL)),
                ('customer', models.ForeignKey(blank=True, help_text='Client this rule applies to (client scope)', null=True, on_delete=django.db.models.deletion.CASCADE, related_name='pricing_rules', to='customers.customer')),
                ('superseded_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='supersedes', to='billing.pricingrule')),
            ],
            options={
                'verbose_name': 'Pricing Rule',
                'verbose_name_plural': 'Pricing Rules',
                'db_table': 'pricing_rules',
                'ordering': ('rule_priority', '-created_at'),
                'indexes': [
                    models.Index(fields=['scope', 'is_active', 'approval_status'], name='idx_rule_scope_active'),
                    models.Index(fields=['customer', 'is_active'], name='idx_rule_customer_active'),
                    models.Index(fields=['contract_reference'], name='idx_rule_contract'),
                    models.Index(fields=['rule_priority', '-created_at'], name='idx_rule_priority'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('code', 'version'), name='unique_pricing_rule_version'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageTier',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('name', models.CharField(blank=True, max_length=100)),
                ('min_usage', models.DecimalField(decimal_places=6, help_text='Start of band (inclusive)', max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('max_usage', models.DecimalField(blank=True, decimal_places=6, help_text='End of band (exclusive, null = unlimited)', max_digits=18, null=True)),
                ('rate', models.DecimalField(decimal_places=6, help_text='Price per unit', max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('is_active', models.BooleanField(default=True)),
                ('rule', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='tiers', to='billing.pricingrule')),
            ],
            options={
                'verbose_name': 'Usage Tier',
                'verbose_name_plural': 'Usage Tiers',
                'db_table': 'pricing_rule_tiers',
                'ordering': ('rule', 'min_usage'),
                'constraints': [
                    models.UniqueConstraint(fields=('rule', 'min_usage'), name='unique_usage_tier_start'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PricingRuleApplication',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('application_key', models.CharField(max_length=255, unique=True)),
                ('amount', models.DecimalField(decimal_places=4, max_digits=18)),
                ('applied_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('rule', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='applications', to='billing.pricingrule')),
            ],
            options={
                'verbose_name': 'Pricing Rule Application',
                'verbose_name_plural': 'Pricing Rule Applications',
                'db_table': 'pricing_rule_applications',
                'indexes': [
                    models.Index(fields=['rule', '-applied_at'], name='idx_rule_application_time'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsagePool',
            fields=[
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('pool_type', models.CharField(choices=[('shared', 'Shared'), ('client_specific', 'Client Specific'), ('location_based', 'Location Based'), ('service_based', 'Service Based')], default='client_specific', max_length=20)),
                ('usage_type', models.CharField(max_length=50)),
                ('service_types', models.JSONField(blank=True, default=list, help_text='Service types; empty applies to all')),
                ('total_capacity', models.DecimalField(decimal_places=6, max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('allocated_capacity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('used_capacity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('capacity_unit', models.CharField(default='units', max_length=20)),
                ('allocation_method', models.CharField(choices=[('equal_share', 'Equal Share'), ('weighted', 'Weighted'), ('priority_based', 'Priority Based'), ('first_come_first_served', 'First Come First Served')], default='first_come_first_served', max_length=30)),
                ('warning_threshold', models.DecimalField(decimal_places=2, default=Decimal('80'), max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('critical_threshold', models.DecimalField(decimal_places=2, default=Decimal('95'), max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('allow_overallocation', models.BooleanField(default=False)),
                ('overallocation_limit', models.DecimalField(decimal_places=2, default=Decimal('0'), help_text='Percent beyond total capacity', max_digits=6, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('time_restrictions', models.JSONField(blank=True, default=dict)),
                ('geographic_restrictions', models.JSONField(blank=True, default=dict)),
                ('allows_rollover', models.BooleanField(default=False)),
                ('rollover_percentage', models.DecimalField(decimal_places=2, default=Decimal('0'), max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('rollover_months', models.PositiveSmallIntegerField(default=1)),
                ('rollover_capacity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('rollover_expires_at', models.DateTimeField(blank=True, null=True)),
                ('billing_cycle', models.CharField(choices=[('monthly', 'Monthly'), ('quarterly', 'Quarterly'), ('yearly', 'Yearly')], default='monthly', max_length=20)),
                ('cycle_start_date', models.DateTimeField(blank=True, null=True)),
                ('cycle_end_date', models.DateTimeField(blank=True, null=True)),
                ('next_reset_date', models.DateTimeField(blank=True, null=True)),
                ('current_period_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('previous_period_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('lifetime_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=20)),
                ('last_usage_update', models.DateTimeField(blank=True, null=True)),
                ('usage_history', models.JSONField(blank=True, default=list)),
                ('pool_status', models.CharField(choices=[('active', 'Active'), ('depleted', 'Depleted'), ('suspended', 'Suspended'), ('expired', 'Expired')], default='active', max_length=20)),
                ('status_reason', models.CharField(blank=True, max_length=255)),
                ('suspended_at', models.DateTimeField(blank=True, null=True)),
                ('expires_at', models.DateTimeField(blank=True, null=True)),
                ('is_active', models.BooleanField(default=True)),
                ('revision', models.PositiveBigIntegerField(default=0)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('customer', models.ForeignKey(help_text='Pool owner', on_delete=django.db.models.deletion.CASCADE, related_name='usage_pools', to='customers.customer')),
                ('deleted_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='deleted_usagepools', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Usage Pool',
                'verbose_name_plural': 'Usage Pools',
                'db_table': 'usage_pools',
                'ordering': ('code',),
                'indexes': [
                    models.Index(fields=['customer', 'usage_type', 'is_active'], name='idx_pool_customer_usage'),
                    models.Index(fields=['pool_status'], name='idx_pool_status'),
                    models.Index(fields=['next_reset_date'], name='idx_pool_next_reset'),
                    models.Index(fields=['deleted_at'], name='idx_pool_deleted'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsagePoolMember',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('weight', models.DecimalField(decimal_places=4, default=Decimal('1'), max_digits=8, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('priority', models.IntegerField(default=0, help_text='Higher priorities draw first')),
                ('allocated_capacity', models.DecimalField(decimal_places=6, default=Decimal('0'), help_text='Explicit quota; zero means unbounded', max_digits=18)),
                ('used_capacity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('position', models.PositiveIntegerField(default=0, help_text='Stored order for first come first served')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='pool_memberships', to='customers.customer')),
                ('pool', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='members', to='billing.usagepool')),
            ],
            options={
                'verbose_name': 'Usage Pool Member',
                'verbose_name_plural': 'Usage Pool Members',
                'db_table': 'usage_pool_members',
                'ordering': ('pool', 'position'),
                'constraints': [
                    models.UniqueConstraint(fields=('pool', 'customer'), name='unique_usage_pool_member'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageBucket',
            fields=[
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('bucket_type', models.CharField(choices=[('included', 'Included'), ('bonus', 'Bonus'), ('promotional', 'Promotional'), ('overage', 'Overage'), ('rollover', 'Rollover')], default='included', max_length=20)),
                ('usage_type', models.CharField(max_length=50)),
                ('service_types', models.JSONField(blank=True, default=list, help_text='Service types; empty applies to all')),
                ('bucket_capacity', models.DecimalField(decimal_places=6, max_digits=18, validators=[django.core.validators.MinValueValidator(Decimal('0'))])),
                ('used_amount', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('reserved_amount', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('usage_priority', models.IntegerField(default=100, help_text='Lower numbers are drawn first')),
                ('billing_priority', models.IntegerField(default=100)),
                ('allows_overflow', models.BooleanField(default=False)),
                ('overflow_behavior', models.CharField(choices=[('spillover', 'Spill Over'), ('block', 'Block'), ('charge_overage', 'Charge Overage')], default='spillover', max_length=20)),
                ('overflow_rate', models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ('time_restrictions', models.JSONField(blank=True, default=dict)),
                ('location_restrictions', models.JSONField(blank=True, default=dict)),
                ('daily_limit', models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ('weekly_limit', models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ('monthly_limit', models.DecimalField(blank=True, decimal_places=6, max_digits=18, null=True)),
                ('current_period_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('daily_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('weekly_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('monthly_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('lifetime_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=20)),
                ('first_usage_at', models.DateTimeField(blank=True, null=True)),
                ('last_usage_at', models.DateTimeField(blank=True, null=True)),
                ('warning_threshold', models.DecimalField(decimal_places=2, default=Decimal('80'), max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('critical_threshold', models.DecimalField(decimal_places=2, default=Decimal('95'), max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('allows_rollover', models.BooleanField(default=False)),
                ('rollover_percentage', models.DecimalField(decimal_places=2, default=Decimal('0'), max_digits=5, validators=[django.core.validators.MinValueValidator(Decimal('0')), django.core.validators.MaxValueValidator(Decimal('100'))])),
                ('rollover_balance', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('rollover_expires_at', models.DateTimeField(blank=True, null=True)),
                ('reset_frequency', models.CharField(choices=[('daily', 'Daily'), ('weekly', 'Weekly'), ('monthly', 'Monthly'), ('billing_cycle', 'Billing Cycle')], default='monthly', max_length=20)),
                ('last_reset_date', models.DateTimeField(blank=True, null=True)),
                ('next_reset_date', models.DateTimeField(blank=True, null=True)),
                ('expires_at', models.DateTimeField(blank=True, null=True)),
                ('bucket_status', models.CharField(choices=[('active', 'Active'), ('depleted', 'Depleted'), ('suspended', 'Suspended'), ('expired', 'Expired')], default='active', max_length=20)),
                ('status_reason', models.CharField(blank=True, max_length=255)),
                ('depleted_at', models.DateTimeField(blank=True, null=True)),
                ('suspended_at', models.DateTimeField(blank=True, null=True)),
                ('is_active', models.BooleanField(default=True)),
                ('revision', models.PositiveBigIntegerField(default=0)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='usage_buckets', to='customers.customer')),
                ('deleted_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='deleted_usagebuckets', to=settings.AUTH_USER_MODEL)),
                ('overflow_bucket', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='overflow_sources', to='billing.usagebucket')),
                ('pool', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='buckets', to='billing.usagepool')),
            ],
            options={
                'verbose_name': 'Usage Bucket',
                'verbose_name_plural': 'Usage Buckets',
                'db_table': 'usage_buckets',
                'ordering': ('usage_priority', 'created_at'),
                'indexes': [
                    models.Index(fields=['customer', 'usage_type', 'is_active'], name='idx_bucket_customer_usage'),
                    models.Index(fields=['pool', 'usage_priority'], name='idx_bucket_pool_priority'),
                    models.Index(fields=['bucket_status'], name='idx_bucket_status'),
                    models.Index(fields=['next_reset_date'], name='idx_bucket_next_reset'),
                    models.Index(fields=['deleted_at'], name='idx_bucket_deleted'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageAlert',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('scope', models.CharField(choices=[('client', 'Client'), ('pool', 'Pool'), ('bucket', 'Bucket')], default='pool', max_length=10)),
                ('threshold_type', models.CharField(choices=[('percentage', 'Percentage'), ('absolute', 'Absolute'), ('rate_of_change', 'Rate of Change'), ('predictive', 'Predictive')], default='percentage', max_length=20)),
                ('comparison_operator', models.CharField(choices=[('>=', 'Greater or equal'), ('>', 'Greater than'), ('<=', 'Less or equal'), ('<', 'Less than'), ('=', 'Equal'), ('!=', 'Not equal')], default='>=', max_length=2)),
                ('threshold_value', models.DecimalField(decimal_places=6, max_digits=18)),
                ('warning_threshold', models.DecimalField(decimal_places=6, default=Decimal('80'), max_digits=18)),
                ('critical_threshold', models.DecimalField(decimal_places=6, default=Decimal('95'), max_digits=18)),
                ('require_consecutive_periods', models.BooleanField(default=False)),
                ('consecutive_period_count', models.PositiveSmallIntegerField(default=1, validators=[django.core.validators.MinValueValidator(1)])),
                ('prediction_horizon_hours', models.PositiveIntegerField(default=24)),
                ('current_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('previous_usage', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('current_threshold_percentage', models.DecimalField(decimal_places=2, default=Decimal('0'), max_digits=10)),
                ('alert_status', models.CharField(choices=[('normal', 'Normal'), ('warning', 'Warning'), ('critical', 'Critical'), ('triggered', 'Triggered')], default='normal', max_length=20)),
                ('severity_level', models.CharField(choices=[('low', 'Low'), ('medium', 'Medium'), ('high', 'High'), ('critical', 'Critical')], default='low', max_length=10)),
                ('last_check_at', models.DateTimeField(blank=True, null=True)),
                ('last_evaluated_revision', models.PositiveBigIntegerField(blank=True, null=True)),
                ('breach_streak', models.PositiveIntegerField(default=0)),
                ('breach_streak_started_at', models.DateTimeField(blank=True, null=True)),
                ('last_triggered_at', models.DateTimeField(blank=True, null=True)),
                ('trigger_count', models.PositiveIntegerField(default=0)),
                ('recent_alerts', models.JSONField(blank=True, default=list)),
                ('notification_log', models.JSONField(blank=True, default=list, help_text='Notification times from the last day, for the hourly and daily caps')),
                ('enable_suppression', models.BooleanField(default=True)),
                ('suppression_window_minutes', models.PositiveIntegerField(default=60)),
                ('suppression_until', models.DateTimeField(blank=True, null=True)),
                ('max_alerts_per_hour', models.PositiveIntegerField(blank=True, null=True)),
                ('max_alerts_per_day', models.PositiveIntegerField(blank=True, null=True)),
                ('suppressed_alert_count', models.PositiveIntegerField(default=0)),
                ('notification_count', models.PositiveIntegerField(default=0)),
                ('warning_alert_count', models.PositiveIntegerField(default=0)),
                ('critical_alert_count', models.PositiveIntegerField(default=0)),
                ('respect_business_hours', models.BooleanField(default=False)),
                ('business_hours', models.JSONField(blank=True, default=dict, help_text='Per-weekday hour windows')),
                ('time_zone', models.CharField(default='UTC', max_length=64)),
                ('weekend_notifications', models.BooleanField(default=True)),
                ('email_notifications', models.BooleanField(default=True)),
                ('sms_notifications', models.BooleanField(default=False)),
                ('webhook_notifications', models.BooleanField(default=False)),
                ('dashboard_notifications', models.BooleanField(default=True)),
                ('notification_recipients', models.JSONField(blank=True, default=list)),
                ('enable_escalation', models.BooleanField(default=False)),
                ('escalation_delay_minutes', models.PositiveIntegerField(default=60)),
                ('last_escalated_at', models.DateTimeField(blank=True, null=True)),
                ('escalation_level', models.PositiveSmallIntegerField(default=0)),
                ('enable_automated_actions', models.BooleanField(default=False)),
                ('auto_suspend_services', models.BooleanField(default=False)),
                ('auto_limit_usage', models.BooleanField(default=False)),
                ('auto_purchase_additional_usage', models.BooleanField(default=False)),
                ('auto_purchase_amount', models.DecimalField(decimal_places=6, default=Decimal('100'), max_digits=18)),
                ('acknowledgment_log', models.JSONField(blank=True, default=list)),
                ('is_active', models.BooleanField(default=True)),
                ('archived_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('acknowledged_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='acknowledged_usage_alerts', to=settings.AUTH_USER_MODEL)),
                ('bucket', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='alerts', to='billing.usagebucket')),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='usage_alerts', to='customers.customer')),
                ('pool', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.CASCADE, related_name='alerts', to='billing.usagepool')),
            ],
            options={
                'verbose_name': 'Usage Alert',
                'verbose_name_plural': 'Usage Alerts',
                'db_table': 'usage_threshold_alerts',
                'ordering': ('code',),
                'indexes': [
                    models.Index(fields=['pool', 'is_active'], name='idx_alert_pool_active'),
                    models.Index(fields=['bucket', 'is_active'], name='idx_alert_bucket_active'),
                    models.Index(fields=['customer', 'scope', 'is_active'], name='idx_alert_customer_scope'),
                    models.Index(fields=['alert_status'], name='idx_alert_status'),
                ],
            },
        ),
        migrations.CreateModel(
            name='RatedUsage',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('idempotency_key', models.CharField(max_length=255, unique=True)),
                ('usage_type', models.CharField(max_length=50)),
                ('service_type', models.CharField(blank=True, max_length=50)),
                ('quantity', models.DecimalField(decimal_places=6, max_digits=18)),
                ('event_timestamp', models.DateTimeField()),
                ('origin_country', models.CharField(blank=True, max_length=2)),
                ('destination_country', models.CharField(blank=True, max_length=2)),
                ('is_roaming', models.BooleanField(default=False)),
                ('properties', models.JSONField(blank=True, default=dict)),
                ('rule_snapshot', models.JSONField(blank=True, default=dict)),
                ('covered_quantity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('uncovered_quantity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('blocked_quantity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('allocation_breakdown', models.JSONField(blank=True, default=dict)),
                ('cost_breakdown', models.JSONField(blank=True, default=dict)),
                ('total_cost', models.DecimalField(decimal_places=4, default=Decimal('0'), max_digits=18)),
                ('alerts_triggered', models.JSONField(blank=True, default=list)),
                ('status', models.CharField(choices=[('rated', 'Rated'), ('allocated', 'Fully Allocated'), ('exception', 'Billing Exception')], default='rated', max_length=20)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('customer', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='rated_usage', to='customers.customer')),
                ('rated_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='rated_usage', to=settings.AUTH_USER_MODEL)),
                ('rule', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='rated_usage', to='billing.pricingrule')),
            ],
            options={
                'verbose_name': 'Rated Usage',
                'verbose_name_plural': 'Rated Usage',
                'db_table': 'rated_usage',
                'ordering': ('-event_timestamp',),
                'indexes': [
                    models.Index(fields=['customer', '-event_timestamp'], name='idx_rated_customer_time'),
                    models.Index(fields=['usage_type', '-event_timestamp'], name='idx_rated_usage_type_time'),
                    models.Index(fields=['status'], name='idx_rated_status'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageBillingException',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('idempotency_key', models.CharField(db_index=True, max_length=255)),
                ('reason', models.CharField(choices=[('no_applicable_rule', 'No Applicable Rule'), ('rule_not_effective', 'Rule Not Effective'), ('unknown_client', 'Unknown Client'), ('allocation_failed', 'Allocation Failed')], max_length=30)),
                ('description', models.TextField(blank=True)),
                ('event_payload', models.JSONField(blank=True, default=dict)),
                ('uncovered_quantity', models.DecimalField(decimal_places=6, default=Decimal('0'), max_digits=18)),
                ('status', models.CharField(choices=[('open', 'Open'), ('resolved', 'Resolved'), ('dismissed', 'Dismissed')], default='open', max_length=20)),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('resolution_notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('customer', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='usage_exceptions', to='customers.customer')),
                ('rated_usage', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='exceptions', to='billing.ratedusage')),
                ('resolved_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='resolved_usage_exceptions', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Usage Billing Exception',
                'verbose_name_plural': 'Usage Billing Exceptions',
                'db_table': 'usage_billing_exceptions',
                'ordering': ('-created_at',),
                'indexes': [
                    models.Index(condition=models.Q(('status', 'open')), fields=['status', '-created_at'], name='usage_exception_open'),
                ],
            },
        ),
    ]
