from core.exceptions.base import (
    CustomException,
    BadRequestException,
    UnauthorizedException,
    ForbiddenException,
    NotFoundException,
    ConflictException,
    CapacityConflictException,
    ValidationException,
    TransientException,
)

__all__ = [
    "CustomException",
    "BadRequestException",
    "UnauthorizedException",
    "ForbiddenException",
    "NotFoundException",
    "ConflictException",
    "CapacityConflictException",
    "ValidationException",
    "TransientException",
]
