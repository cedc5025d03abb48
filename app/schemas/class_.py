from decimal import Decimal
from typing import List, Optional

from pydantic import Field, model_validator

from app.schemas.base import BaseSchema


class CustomFee(BaseSchema):
    """Extra fee attached to a class (registration, jersey, ...)."""

    id: Optional[str] = None
    name: str
    amount: Decimal = Field(..., ge=0)
    is_optional: bool = False
    description: Optional[str] = None


class ClassOffering(BaseSchema):
    """Class snapshot used for one checkout session."""

    id: str
    name: str
    description: Optional[str] = None
    program_id: Optional[str] = None
    school_id: Optional[str] = None
    school_name: Optional[str] = None

    # Capacity
    capacity: int = Field(0, ge=0)  # 0 means unlimited
    current_enrollment: int = Field(0, ge=0)
    available_spots: Optional[int] = None
    has_capacity: Optional[bool] = None
    waitlist_enabled: bool = True

    # Pricing
    price: Decimal = Field(Decimal("0.00"), ge=0)
    installments_enabled: bool = False
    custom_fees: List[CustomFee] = []

    @model_validator(mode="after")
    def assign_fee_ids(self):
        """Fees without an id are addressed by their position."""
        for index, fee in enumerate(self.custom_fees):
            if not fee.id:
                fee.id = str(index)
        return self

    @property
    def required_fees(self) -> List[CustomFee]:
        return [f for f in self.custom_fees if not f.is_optional]

    @property
    def optional_fees(self) -> List[CustomFee]:
        return [f for f in self.custom_fees if f.is_optional]

    def get_fee(self, fee_id: str) -> Optional[CustomFee]:
        for fee in self.custom_fees:
            if fee.id == fee_id:
                return fee
        return None
