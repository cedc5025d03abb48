from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Base schema for API payloads.

    Unknown fields sent by the API are ignored so that backend additions
    never break checkout.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        extra="ignore",
        coerce_numbers_to_str=True,
    )
