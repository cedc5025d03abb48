from datetime import datetime
from typing import Optional

from pydantic import Field

from app.schemas.base import BaseSchema


class JoinWaitlistRequest(BaseSchema):
    """Request to join waitlist for a class."""

    child_id: str
    class_id: str
    priority: str = Field("regular", pattern="^(priority|regular)$")
    payment_method_id: Optional[str] = None  # Required for priority waitlist


class WaitlistEnrollmentResponse(BaseSchema):
    """Enrollment created by joining a waitlist."""

    id: str
    child_id: str
    class_id: str
    status: str
    waitlist_priority: Optional[str] = None
    created_at: Optional[datetime] = None
