"""Scheduled execution enums."""

from enum import Enum


class ExecutionStatus(str, Enum):
    """
    Lifecycle of a scheduled execution.

    pending -> in_progress -> sent | failed
    in_progress -> pending (transient failure, retry scheduled)
    pending -> canceled
    in_progress -> canceled (source disabled or removed while claimed)
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SENT = "sent"
    FAILED = "failed"
    CANCELED = "canceled"

    @classmethod
    def terminal(cls) -> set["ExecutionStatus"]:
        return {cls.SENT, cls.FAILED, cls.CANCELED}


class ExecutionSource(str, Enum):
    """Which configuration produced an execution."""

    AUTOMATION = "automation"
    DRIP = "drip"


class CancelReason(str, Enum):
    """Why a pending execution was canceled."""

    STAGE_EXIT = "stage_exit"
    RULE_DISABLED = "rule_disabled"
    RULE_DELETED = "rule_deleted"
    STEP_DISABLED = "step_disabled"
    STEP_DELETED = "step_deleted"
    CAMPAIGN_DISABLED = "campaign_disabled"
    CAMPAIGN_DELETED = "campaign_deleted"
    CAMPAIGN_STEP_DELETED = "campaign_step_deleted"
    UNENROLLED = "unenrolled"
