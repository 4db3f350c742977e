"""Drip campaign enums."""

from enum import Enum


class EnrollmentStatus(str, Enum):
    """Status of an entity's enrollment in a drip campaign."""

    ACTIVE = "active"
    COMPLETED = "completed"
    UNENROLLED = "unenrolled"
