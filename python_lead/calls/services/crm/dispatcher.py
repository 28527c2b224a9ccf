"""
CRM-agnostic dispatch of analyzed requests to every configured integration.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from calls.models import Request
from calls.repository import TenantRepository
from calls.services.crm.base import CRMConfigurationError, CRMConnector
from calls.services.errors import DependencyError
from calls.services.mapping import (
    MissingRequiredFieldError,
    apply_field_mapping,
    build_lead_record,
    merge_field_mappings,
)
from calls.services.rate_limiter import CancelToken
from calls.services.workflow import WorkflowConfig

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    synced: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def attempted(self) -> bool:
        return bool(self.synced or self.skipped or self.failed)

    @property
    def complete(self) -> bool:
        return self.attempted and not self.failed


class CRMDispatcher:
    """
    Pushes a request to each enabled integration of its tenant.

    Args:
        connectors: Connector per ``crm_type``
        degraded_threshold: Consecutive failures before an integration is degraded
    """

    def __init__(self, connectors: Dict[str, CRMConnector], degraded_threshold: int = 5):
        self.connectors = connectors
        self.degraded_threshold = degraded_threshold

    def dispatch(self, repo: TenantRepository, request: Request, workflow: WorkflowConfig,
                 cancel: Optional[CancelToken] = None) -> DispatchOutcome:
        outcome = DispatchOutcome()
        cancel = cancel or CancelToken()

        integrations = [
            integration for integration in repo.list_crm_integrations()
            if workflow.provider_enabled(integration.crm_type)
        ]
        if not integrations:
            logger.info(f"No CRM integrations enabled for tenant={repo.tenant_id}; request {request.request_id}")
            return outcome

        try:
            lead = build_lead_record(request)
        except MissingRequiredFieldError as e:
            for integration in integrations:
                repo.record_crm_sync_failure(integration.integration_id, str(e), self.degraded_threshold)
                outcome.failed[integration.crm_type] = str(e)
            return outcome

        crm_sync = request.crm_sync or {}
        for integration in integrations:
            crm_type = integration.crm_type
            previous = crm_sync.get(crm_type) or {}
            if previous.get('round') == request.processing_round:
                logger.info(f"Request {request.request_id} already synced to {crm_type} in round {request.processing_round}")
                outcome.skipped.append(crm_type)
                continue

            connector = self.connectors.get(crm_type)
            if connector is None:
                error = f"no connector for CRM type '{crm_type}'"
                logger.error(f"{error} (tenant={repo.tenant_id})")
                repo.record_crm_sync_failure(integration.integration_id, error, self.degraded_threshold)
                outcome.failed[crm_type] = error
                continue

            try:
                mapping = merge_field_mappings(
                    connector.default_field_mapping,
                    workflow.crm.field_mapping.get(crm_type),
                    integration.config.get('field_mapping'),
                )
                fields, _ = apply_field_mapping(lead, mapping)
            except Exception as e:
                error = f"field mapping failed: {e.__class__.__name__}: {e}"
                logger.error(
                    f"CRM {crm_type} {error} for request {request.request_id} (tenant={repo.tenant_id})",
                    exc_info=True
                )
                repo.record_crm_sync_failure(integration.integration_id, error, self.degraded_threshold)
                outcome.failed[crm_type] = error
                continue

            try:
                result = connector.create_or_update_contact(
                    fields,
                    integration.config,
                    external_id=previous.get('external_id'),
                    cancel=cancel,
                )
            except (DependencyError, CRMConfigurationError) as e:
                logger.warning(f"CRM {crm_type} sync failed for request {request.request_id} (tenant={repo.tenant_id}): {e}")
                repo.record_crm_sync_failure(integration.integration_id, str(e), self.degraded_threshold)
                outcome.failed[crm_type] = str(e)
                continue

            repo.record_crm_sync_success(integration.integration_id)
            external_id = result.external_id or None
            if external_id is None:
                logger.warning(
                    f"CRM {crm_type} accepted request {request.request_id} without a record id; "
                    f"a later round will create a new record"
                )
            repo.record_crm_sync_result(request.request_id, crm_type, external_id, request.processing_round)
            outcome.synced.append(crm_type)
            logger.info(
                f"Request {request.request_id} {'created' if result.created else 'updated'} "
                f"in {crm_type} as {result.external_id}"
            )

        return outcome

    def check_connection(self, crm_type: str, config: dict, cancel: Optional[CancelToken] = None) -> None:
        connector = self.connectors.get(crm_type)
        if connector is None:
            raise CRMConfigurationError(f"no connector for CRM type '{crm_type}'")
        connector.validate_connection(config, cancel=cancel)
