"""Tracked entity enums."""

from enum import Enum


class EntityKind(str, Enum):
    """Shape of the upstream record a tracked entity mirrors."""

    CONTACT = "contact"
    PROJECT = "project"
