"""Automation rule enums."""

from enum import Enum


class AutomationTriggerKind(str, Enum):
    """Stage transitions that can fire an automation rule."""

    STAGE_CHANGE = "stage_change"  # any transition
    SPECIFIC_STAGE = "specific_stage"  # only when entering target_stage_id


class ActionKind(str, Enum):
    """What a step does when it comes due."""

    EMAIL = "email"
    SMS = "sms"
    DOCUMENT_SEND = "document_send"


class RecipientKind(str, Enum):
    """Who receives a step's message."""

    ENTITY_CONTACT = "entity_contact"
    OWNING_USER = "owning_user"


class DelayKind(str, Enum):
    """Stored discriminator for a step's delay specification."""

    IMMEDIATE = "immediate"
    RELATIVE_DURATION = "relative_duration"
    NEXT_CALENDAR_DAY_AT = "next_calendar_day_at"


class TemplateChannel(str, Enum):
    """Channel a message template is written for."""

    EMAIL = "email"
    SMS = "sms"
