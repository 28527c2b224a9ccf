"""
Check that each CRM integration of a tenant accepts its credentials.
"""
from django.core.management.base import BaseCommand

from calls.pipeline import get_pipeline
from calls.repository import TenantRepository
from calls.services.errors import PipelineError


class Command(BaseCommand):
    help = 'Validate the connection of every CRM integration of a tenant'

    def add_arguments(self, parser):
        parser.add_argument('--tenant', required=True, help='Tenant whose integrations are checked')
        parser.add_argument(
            '--include-disabled',
            action='store_true',
            help='Also check disabled integrations'
        )

    def handle(self, *args, **options):
        repo = TenantRepository(options['tenant'])
        integrations = repo.list_crm_integrations(include_disabled=options['include_disabled'])
        if not integrations:
            self.stdout.write(self.style.WARNING(f"No CRM integrations for tenant {options['tenant']}"))
            return

        dispatcher = get_pipeline().crm
        failures = 0
        for integration in integrations:
            label = f"{integration.crm_type} ({integration.integration_id}, {integration.status})"
            try:
                dispatcher.check_connection(integration.crm_type, integration.config)
            except PipelineError as e:
                failures += 1
                self.stdout.write(self.style.ERROR(f"  ✗ {label}: {e}"))
                continue
            self.stdout.write(self.style.SUCCESS(f"  ✓ {label}"))

        if failures:
            self.stdout.write(self.style.ERROR(f"{failures} of {len(integrations)} integration(s) failed"))
        else:
            self.stdout.write(self.style.SUCCESS(f"All {len(integrations)} integration(s) reachable"))
