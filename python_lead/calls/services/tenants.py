"""
Resolution of an inbound call to the tenant office that owns it.
"""
import logging

from calls.models import Office
from calls.repository import (
    OFFICE_INACTIVE,
    OFFICE_TENANT_MISMATCH,
    classify_office_miss,
    get_active_office,
)

logger = logging.getLogger(__name__)


class TenantResolutionError(Exception):
    """Base class for tenant resolution failures. Never retried."""
    reason = 'tenant_resolution_failed'

    def __init__(self, tenant_id: str, company_id: str, message: str = ''):
        super().__init__(message or f"{self.reason}: tenant={tenant_id} company={company_id}")
        self.tenant_id = tenant_id
        self.company_id = company_id


class TenantNotFound(TenantResolutionError):
    """No office is linked to the company id."""
    reason = 'tenant_not_found'


class InvalidTenantMapping(TenantResolutionError):
    """The company id belongs to a different tenant than the one claimed."""
    reason = 'invalid_tenant_mapping'


class OfficeInactive(TenantResolutionError):
    """The claimed tenant's office for this company exists but is inactive."""
    reason = 'office_inactive'


def resolve_office(tenant_id: str, company_id: str) -> Office:
    """
    Map a claimed tenant id and external company id to the active office.

    Raises:
        TenantNotFound, InvalidTenantMapping, OfficeInactive
    """
    office = get_active_office(tenant_id, company_id)
    if office is not None:
        logger.debug(f"Resolved tenant={tenant_id} company={company_id} to office {office.office_id}")
        return office

    miss = classify_office_miss(tenant_id, company_id)
    if miss == OFFICE_INACTIVE:
        raise OfficeInactive(tenant_id, company_id)
    if miss == OFFICE_TENANT_MISMATCH:
        raise InvalidTenantMapping(tenant_id, company_id)
    raise TenantNotFound(tenant_id, company_id)
