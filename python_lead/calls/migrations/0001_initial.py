# Generated migration for the call ingestion models

from django.db import migrations, models
import django.db.models.deletion

import calls.models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
    ]

    operations = [
        migrations.CreateModel(
            name='Tenant',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('tenant_id', models.CharField(max_length=64, unique=True)),
                ('name', models.CharField(max_length=255)),
                ('status', models.CharField(choices=[('active', 'Active'), ('inactive', 'Inactive')], db_index=True, default='active', max_length=20)),
                ('webhook_secret', models.CharField(max_length=255)),
                ('config', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['tenant_id'],
            },
        ),
        migrations.CreateModel(
            name='Office',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('office_id', models.CharField(default=calls.models.new_office_id, max_length=64, unique=True)),
                ('name', models.CharField(blank=True, default='', max_length=255)),
                ('external_company_id', models.CharField(db_index=True, max_length=64)),
                ('call_provider_account_id', models.CharField(max_length=64)),
                ('call_provider_api_key_ref', models.CharField(max_length=255)),
                ('workflow_config', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('active', 'Active'), ('inactive', 'Inactive')], db_index=True, default='active', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('tenant', models.ForeignKey(db_column='tenant_id', on_delete=django.db.models.deletion.PROTECT, related_name='offices', to='calls.tenant', to_field='tenant_id')),
            ],
            options={
                'ordering': ['tenant_id', 'office_id'],
            },
        ),
        migrations.CreateModel(
            name='Request',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('request_id', models.CharField(default=calls.models.new_request_id, max_length=64, unique=True)),
                ('call_id', models.CharField(max_length=128)),
                ('source', models.CharField(default='callrail', max_length=32)),
                ('request_type', models.CharField(default='call', max_length=32)),
                ('communication_mode', models.CharField(default='phone', max_length=32)),
                ('status', models.CharField(choices=[('received', 'Received'), ('enriching', 'Enriching'), ('analyzed', 'Analyzed'), ('synced', 'Synced'), ('failed', 'Failed')], db_index=True, default='received', max_length=20)),
                ('raw_payload', models.JSONField()),
                ('normalized_payload', models.JSONField(blank=True, null=True)),
                ('call_details', models.JSONField(blank=True, null=True)),
                ('recording_url', models.TextField(blank=True, null=True)),
                ('transcription_data', models.JSONField(blank=True, null=True)),
                ('ai_analysis', models.JSONField(blank=True, null=True)),
                ('lead_score', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('spam_likelihood', models.FloatField(blank=True, null=True)),
                ('is_spam', models.BooleanField(default=False)),
                ('crm_sync', models.JSONField(blank=True, default=dict)),
                ('delivery_count', models.PositiveIntegerField(default=1)),
                ('processing_round', models.PositiveIntegerField(default=1)),
                ('failure_stage', models.CharField(blank=True, max_length=32, null=True)),
                ('failure_reason', models.TextField(blank=True, null=True)),
                ('needs_manual_review', models.BooleanField(db_index=True, default=False)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('office', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='requests', to='calls.office')),
                ('tenant', models.ForeignKey(db_column='tenant_id', on_delete=django.db.models.deletion.PROTECT, related_name='requests', to='calls.tenant', to_field='tenant_id')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='CallRecording',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('recording_id', models.CharField(default=calls.models.new_recording_id, max_length=64, unique=True)),
                ('call_id', models.CharField(max_length=128)),
                ('storage_url', models.TextField()),
                ('size_bytes', models.PositiveIntegerField(default=0)),
                ('transcription_status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='recordings', to='calls.request')),
                ('tenant', models.ForeignKey(db_column='tenant_id', on_delete=django.db.models.deletion.PROTECT, related_name='recordings', to='calls.tenant', to_field='tenant_id')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='WebhookEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('event_id', models.CharField(default=calls.models.new_event_id, max_length=64, unique=True)),
                ('webhook_source', models.CharField(max_length=32)),
                ('call_id', models.CharField(db_index=True, max_length=128)),
                ('correlation_id', models.CharField(db_index=True, max_length=64)),
                ('payload_hash', models.CharField(max_length=64)),
                ('source_headers', models.JSONField(blank=True, null=True)),
                ('processing_status', models.CharField(choices=[('received', 'Received'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed')], db_index=True, default='received', max_length=20)),
                ('created_at', models.DateTimeField(auto_now_add=True, db_index=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('request', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='webhook_events', to='calls.request')),
                ('tenant', models.ForeignKey(db_column='tenant_id', on_delete=django.db.models.deletion.PROTECT, related_name='webhook_events', to='calls.tenant', to_field='tenant_id')),
            ],
            options={
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='AIProcessingLog',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('log_id', models.CharField(default=calls.models.new_log_id, max_length=64, unique=True)),
                ('analysis_type', models.CharField(choices=[('transcription', 'Transcription'), ('content', 'Content Analysis'), ('spam', 'Spam Detection')], max_length=20)),
                ('status', models.CharField(choices=[('success', 'Success'), ('failed', 'Failed'), ('parse_error', 'Parse Error')], max_length=20)),
                ('attempt_no', models.PositiveIntegerField(default=1)),
                ('processing_data', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='ai_logs', to='calls.request')),
                ('tenant', models.ForeignKey(db_column='tenant_id', on_delete=django.db.models.deletion.PROTECT, related_name='ai_logs', to='calls.tenant', to_field='tenant_id')),
            ],
            options={
                'ordering': ['request', 'created_at'],
            },
        ),
        migrations.CreateModel(
            name='CRMIntegration',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('integration_id', models.CharField(default=calls.models.new_integration_id, max_length=64, unique=True)),
                ('crm_type', models.CharField(max_length=32)),
                ('config', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('active', 'Active'), ('degraded', 'Degraded'), ('disabled', 'Disabled')], db_index=True, default='active', max_length=20)),
                ('sync_status', models.CharField(choices=[('never', 'Never Synced'), ('success', 'Success'), ('error', 'Error')], default='never', max_length=20)),
                ('attempt_count', models.PositiveIntegerField(default=0)),
                ('consecutive_failures', models.PositiveIntegerField(default=0)),
                ('last_error', models.TextField(blank=True, null=True)),
                ('last_attempt_at', models.DateTimeField(blank=True, null=True)),
                ('last_success_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('tenant', models.ForeignKey(db_column='tenant_id', on_delete=django.db.models.deletion.PROTECT, related_name='crm_integrations', to='calls.tenant', to_field='tenant_id')),
            ],
            options={
                'ordering': ['tenant_id', 'crm_type'],
            },
        ),
        migrations.AddConstraint(
            model_name='office',
            constraint=models.UniqueConstraint(condition=models.Q(('status', 'active')), fields=('external_company_id', 'tenant'), name='unique_active_office_per_company'),
        ),
        migrations.AddConstraint(
            model_name='request',
            constraint=models.UniqueConstraint(fields=('tenant', 'call_id'), name='unique_request_per_tenant_call'),
        ),
        migrations.AddIndex(
            model_name='request',
            index=models.Index(fields=['tenant', 'status', 'created_at'], name='calls_reque_tenant__a3c1f0_idx'),
        ),
        migrations.AddConstraint(
            model_name='callrecording',
            constraint=models.UniqueConstraint(fields=('tenant', 'call_id'), name='unique_recording_per_tenant_call'),
        ),
        migrations.AddConstraint(
            model_name='crmintegration',
            constraint=models.UniqueConstraint(fields=('tenant', 'crm_type'), name='unique_crm_integration_per_tenant'),
        ),
    ]
