"""Enrollment operations used by checkout."""

from app.schemas.enrollment import JoinWaitlistRequest, WaitlistEnrollmentResponse
from app.services.api_client import ApiClient
from core.logging import get_logger

logger = get_logger(__name__)


class EnrollmentService:
    """Waitlist access for full classes."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def join_waitlist(self, request: JoinWaitlistRequest) -> WaitlistEnrollmentResponse:
        data = await self.api.post(
            "/enrollments/waitlist/join", json=request.model_dump(mode="json", exclude_none=True)
        )
        enrollment = WaitlistEnrollmentResponse.model_validate(data)
        logger.info(f"Child {request.child_id} waitlisted for class {request.class_id}")
        return enrollment
