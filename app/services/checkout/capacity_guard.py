"""Capacity decision for a class offering."""

from typing import Optional

from app.schemas.class_ import ClassOffering


class CapacityGuard:
    """Decides whether a class still accepts enrollments.

    The decision only reflects the snapshot loaded at initialization. The
    server re-checks capacity on order creation and a late full class is
    reported as a capacity conflict there.
    """

    @staticmethod
    def remaining_spots(offering: ClassOffering) -> Optional[int]:
        """Spots left, or None when the class has no limit."""
        if offering.available_spots is not None:
            return max(offering.available_spots, 0)
        if offering.capacity == 0:
            return None
        return max(offering.capacity - offering.current_enrollment, 0)

    @staticmethod
    def has_capacity(offering: ClassOffering) -> bool:
        if offering.has_capacity is False:
            return False
        if offering.available_spots is not None and offering.available_spots <= 0:
            return False
        if offering.capacity > 0 and offering.current_enrollment >= offering.capacity:
            return False
        return True
