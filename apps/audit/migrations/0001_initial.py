# Generated migration for the usage billing audit log

import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('contenttypes', '0002_remove_content_type_name'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='AuditEvent',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('timestamp', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('actor_type', models.CharField(choices=[('user', 'User'), ('system', 'System')], default='system', max_length=20)),
                ('action', models.CharField(db_index=True, max_length=80)),
                ('category', models.CharField(choices=[('business_operation', 'Business Operation'), ('system_admin', 'System Administration'), ('configuration', 'Configuration'), ('billing_exception', 'Billing Exception')], default='business_operation', max_length=30)),
                ('severity', models.CharField(choices=[('low', 'Low'), ('medium', 'Medium'), ('high', 'High'), ('critical', 'Critical')], default='low', max_length=10)),
                ('description', models.TextField(blank=True)),
                ('object_id', models.CharField(blank=True, max_length=64)),
                ('old_values', models.JSONField(blank=True, default=dict)),
                ('new_values', models.JSONField(blank=True, default=dict)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('request_id', models.CharField(blank=True, max_length=64)),
                ('content_type', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to='contenttypes.contenttype')),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'audit_event',
                'ordering': ('-timestamp',),
                'indexes': [
                    models.Index(fields=['content_type', 'object_id', '-timestamp'], name='idx_audit_object_time'),
                    models.Index(fields=['action', '-timestamp'], name='idx_audit_action_time'),
                    models.Index(fields=['category', '-timestamp'], name='idx_audit_category_time'),
                ],
            },
        ),
    ]
