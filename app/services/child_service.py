"""Parent's children lookups."""

from app.schemas.child import ChildCandidate, ChildListResponse
from app.services.api_client import ApiClient


class ChildService:
    """Read access to the current parent's children."""

    def __init__(self, api: ApiClient):
        self.api = api

    async def get_my_children(self) -> list[ChildCandidate]:
        data = await self.api.get("/children/my")
        # The endpoint answers either a bare list or {items, total}
        if isinstance(data, list):
            data = {"items": data, "total": len(data)}
        return ChildListResponse.model_validate(data).items
