"""Waiver lookups and acceptance."""

from typing import Optional

from app.schemas.waiver import (
    WaiverAcceptanceCreate,
    WaiverAcceptanceResponse,
    WaiverStatusListResponse,
)
from app.services.api_client import ApiClient
from core.logging import get_logger

logger = get_logger(__name__)


class WaiverService:
    """Access to the waiver endpoints for the current guardian."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_pending(
        self,
        program_id: Optional[str] = None,
        school_id: Optional[str] = None,
        child_id: Optional[str] = None,
    ) -> WaiverStatusListResponse:
        """Get required waivers with acceptance status for a scope."""
        data = await self.api.get(
            "/waivers/required",
            params={
                "program_id": program_id,
                "school_id": school_id,
                "child_id": child_id,
            },
        )
        return WaiverStatusListResponse.model_validate(data)

    async def accept(self, acceptance: WaiverAcceptanceCreate) -> WaiverAcceptanceResponse:
        data = await self.api.post(
            "/waivers/accept", json=acceptance.model_dump(mode="json", exclude_none=True)
        )
        logger.info(f"Waiver {acceptance.waiver_template_id} accepted")
        return WaiverAcceptanceResponse.model_validate(data)
