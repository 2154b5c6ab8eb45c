"""
Organization key authentication.

Every ingestion and review call carries ``X-Organization-Key``; it must match
the api key configured for the organization the call acts on.
"""

import hmac
import logging
from typing import Optional

from fastapi import Header

from tracking_service.core.errors import InvalidOrganizationError, UnauthorizedError
from tracking_service.models.commission import OrganizationConfig
from tracking_service.orchestrator.directory import CampaignDirectory

logger = logging.getLogger(__name__)


async def organization_key(x_organization_key: Optional[str] = Header(None)) -> str:
    """
    Read the organization key header.

    Raises:
        UnauthorizedError: if the header is missing or blank
    """
    if not x_organization_key or not x_organization_key.strip():
        raise UnauthorizedError("Missing X-Organization-Key header")
    return x_organization_key.strip()


async def authorize(directory: CampaignDirectory, organization_id: str, key: str) -> OrganizationConfig:
    """
    Check ``key`` against the organization's configured api key.

    Raises:
        InvalidOrganizationError: unknown organization
        UnauthorizedError: key mismatch
    """
    organization = await directory.get_organization(organization_id)
    if organization is None:
        raise InvalidOrganizationError(organization_id)

    if not hmac.compare_digest(organization.api_key.encode("utf-8"), key.encode("utf-8")):
        logger.warning(f"Rejected organization key for {organization_id}")
        raise UnauthorizedError()
    return organization
