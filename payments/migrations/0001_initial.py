import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('session_id', models.CharField(max_length=64, unique=True)),
                ('tran_id', models.CharField(max_length=64, unique=True)),
                ('val_id', models.CharField(blank=True, db_index=True, default='', max_length=64)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default='BDT', max_length=8)),
                ('customer', models.JSONField(blank=True, default=dict)),
                ('items', models.JSONField(blank=True, default=list)),
                ('product', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('PENDING', 'PENDING'), ('VALIDATED', 'VALIDATED'), ('SUCCESS', 'SUCCESS'), ('SYNC_PENDING', 'SYNC_PENDING'), ('FAILED', 'FAILED'), ('CANCELLED', 'CANCELLED')], db_index=True, default='PENDING', max_length=16)),
                ('version', models.PositiveIntegerField(default=0)),
                ('gateway_session', models.JSONField(blank=True, null=True)),
                ('payment_info', models.JSONField(blank=True, null=True)),
                ('external_api_response', models.JSONField(blank=True, null=True)),
                ('sync_attempts', models.PositiveIntegerField(default=0)),
                ('next_sync_at', models.DateTimeField(blank=True, db_index=True, null=True)),
                ('last_sync_error', models.TextField(blank=True, default='')),
                ('sync_escalated', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='payment_orders', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
        migrations.CreateModel(
            name='ReconciliationIssue',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('kind', models.CharField(choices=[('CONFLICTING_FINALIZATION', 'Conflicting finalization'), ('PROVISIONING_ESCALATED', 'Provisioning escalated')], db_index=True, max_length=32)),
                ('detail', models.TextField(blank=True, default='')),
                ('payload', models.JSONField(blank=True, null=True)),
                ('resolved', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('resolved_at', models.DateTimeField(blank=True, null=True)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='issues', to='payments.order')),
            ],
            options={
                'ordering': ('-created_at',),
            },
        ),
    ]
