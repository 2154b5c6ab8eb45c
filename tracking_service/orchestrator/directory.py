"""
Campaign directory: read-only view of organizations, campaigns and their
commission rules. The records themselves are owned elsewhere; this service
only looks them up.
"""
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from tracking_service.core.errors import (
    InvalidAffiliateError,
    InvalidCampaignError,
    InvalidOrganizationError,
)
from tracking_service.models.commission import CampaignConfig, OrganizationConfig

logger = logging.getLogger(__name__)


class CampaignDirectory(ABC):

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[OrganizationConfig]:
        ...

    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[CampaignConfig]:
        ...

    async def resolve(
        self,
        organization_id: str,
        campaign_id: str,
        affiliate_id: str,
    ) -> Tuple[OrganizationConfig, CampaignConfig]:
        """
        Look up the entities an event references.

        Raises:
            InvalidOrganizationError, InvalidCampaignError, InvalidAffiliateError
        """
        organization = await self.get_organization(organization_id)
        if organization is None:
            raise InvalidOrganizationError(organization_id)

        campaign = await self.get_campaign(campaign_id)
        if campaign is None or campaign.organization_id != organization_id:
            raise InvalidCampaignError(campaign_id)
        if not campaign.active:
            raise InvalidCampaignError(campaign_id, reason="Campaign is not active")

        if affiliate_id not in campaign.affiliate_ids:
            raise InvalidAffiliateError(affiliate_id, campaign_id)

        return organization, campaign


class InMemoryCampaignDirectory(CampaignDirectory):
    """Directory held in process, loaded from a JSON file or registered directly"""

    def __init__(
        self,
        organizations: Iterable[OrganizationConfig] = (),
        campaigns: Iterable[CampaignConfig] = (),
    ):
        self._organizations: Dict[str, OrganizationConfig] = {}
        self._campaigns: Dict[str, CampaignConfig] = {}
        for organization in organizations:
            self.add_organization(organization)
        for campaign in campaigns:
            self.add_campaign(campaign)

    @classmethod
    def from_file(cls, path: str) -> "InMemoryCampaignDirectory":
        """
        Load ``{"organizations": [...], "campaigns": [...]}`` (camelCase keys).
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        directory = cls(
            organizations=[OrganizationConfig.model_validate(o) for o in raw.get("organizations", [])],
            campaigns=[CampaignConfig.model_validate(c) for c in raw.get("campaigns", [])],
        )
        logger.info(
            f"Loaded {len(directory._organizations)} organizations and "
            f"{len(directory._campaigns)} campaigns from {path}"
        )
        return directory

    def add_organization(self, organization: OrganizationConfig):
        self._organizations[organization.id] = organization

    def add_campaign(self, campaign: CampaignConfig):
        self._campaigns[campaign.id] = campaign

    async def get_organization(self, organization_id: str) -> Optional[OrganizationConfig]:
        return self._organizations.get(organization_id)

    async def get_campaign(self, campaign_id: str) -> Optional[CampaignConfig]:
        return self._campaigns.get(campaign_id)
