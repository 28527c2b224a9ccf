"""
Re-queue failed requests from the start of the pipeline.
"""
from django.core.management.base import BaseCommand, CommandError

from calls.models import Request
from calls.repository import TenantRepository
from calls.tasks import reprocess_request


class Command(BaseCommand):
    help = 'Reopen failed requests of a tenant and enqueue them for enrichment'

    def add_arguments(self, parser):
        parser.add_argument('--tenant', required=True, help='Tenant whose requests are reprocessed')
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument('--call-id', help='Reprocess the request for this call')
        target.add_argument(
            '--all-failed',
            action='store_true',
            help='Reprocess every failed request of the tenant'
        )

    def handle(self, *args, **options):
        tenant_id = options['tenant']
        repo = TenantRepository(tenant_id)

        if options['call_id']:
            call_request = repo.get_request_by_call(options['call_id'])
            if call_request is None:
                raise CommandError(f"No request for call {options['call_id']} in tenant {tenant_id}")
            requests = [call_request]
        else:
            requests = repo.list_requests(status=Request.Status.FAILED, limit=None)

        reopened = 0
        for call_request in requests:
            if reprocess_request(tenant_id, call_request.request_id):
                reopened += 1
                self.stdout.write(f"  - {call_request.request_id} (call {call_request.call_id}) re-queued")
            else:
                self.stdout.write(
                    self.style.WARNING(
                        f"  - {call_request.request_id} is {call_request.status}, not reprocessed"
                    )
                )

        self.stdout.write(self.style.SUCCESS(f"Re-queued {reopened} of {len(requests)} request(s)"))
