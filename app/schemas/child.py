from typing import List, Optional

from app.schemas.base import BaseSchema


class ChildCandidate(BaseSchema):
    """A parent's child that can be enrolled."""

    id: str
    first_name: str
    last_name: str = ""
    enrolled_class_ids: List[str] = []

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_enrolled_in(self, class_id: str) -> bool:
        return class_id in self.enrolled_class_ids


class ChildListResponse(BaseSchema):
    """Schema for the parent's children list."""

    items: List[ChildCandidate]
    total: Optional[int] = None
