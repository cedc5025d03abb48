"""Class catalog lookups."""

from app.schemas.class_ import ClassOffering
from app.services.api_client import ApiClient
from core.logging import get_logger

logger = get_logger(__name__)


class ClassService:
    """Read access to class offerings."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_by_id(self, class_id: str) -> ClassOffering:
        """Fetch a class with capacity, price and custom fees.

        Raises:
            NotFoundException: Class does not exist
            TransientException: API unreachable
        """
        data = await self.api.get(f"/classes/{class_id}")
        offering = ClassOffering.model_validate(data)
        logger.debug(
            f"Loaded class {offering.id}: {offering.current_enrollment}/{offering.capacity} enrolled"
        )
        return offering
