"""SQLAlchemy ORM models."""

from stageflow.db.models.automations import AutomationRule, AutomationStep, MessageTemplate
from stageflow.db.models.drip import DripCampaign, DripCampaignStep, DripEnrollment
from stageflow.db.models.entities import StageTransition, TrackedEntity
from stageflow.db.models.executions import ScheduledExecution
from stageflow.db.models.tenants import Organization, PipelineStage, User

__all__ = [
    "AutomationRule",
    "AutomationStep",
    "DripCampaign",
    "DripCampaignStep",
    "DripEnrollment",
    "MessageTemplate",
    "Organization",
    "PipelineStage",
    "ScheduledExecution",
    "StageTransition",
    "TrackedEntity",
    "User",
]
