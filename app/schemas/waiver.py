from datetime import datetime
from typing import List, Optional

from pydantic import Field

from app.schemas.base import BaseSchema


class WaiverTemplate(BaseSchema):
    """Waiver document a guardian must accept."""

    id: str
    name: str
    waiver_type: str
    content: str = ""
    version: int = 1
    is_required: bool = True
    applies_to_program_id: Optional[str] = None
    applies_to_school_id: Optional[str] = None


class WaiverStatus(BaseSchema):
    """Acceptance state of one template for the current guardian."""

    waiver_template: WaiverTemplate
    is_accepted: bool = False
    needs_reconsent: bool = False

    @property
    def is_pending(self) -> bool:
        return not self.is_accepted or self.needs_reconsent


class WaiverStatusListResponse(BaseSchema):
    """Pending / required waivers for a scope."""

    items: List[WaiverStatus] = []
    pending_count: int = 0
    total: int = 0

    @property
    def pending_templates(self) -> List[WaiverTemplate]:
        return [item.waiver_template for item in self.items if item.is_pending]


class WaiverAcceptanceCreate(BaseSchema):
    """Schema for accepting a waiver."""

    waiver_template_id: str
    signer_name: str = Field(..., min_length=1, max_length=200)
    child_id: Optional[str] = None


class WaiverAcceptanceResponse(BaseSchema):
    """Schema for waiver acceptance response."""

    id: str
    waiver_template_id: str
    waiver_version: int = 1
    signer_name: str
    accepted_at: Optional[datetime] = None
