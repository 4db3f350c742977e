"""Content service - message templates and per-execution rendering."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from stageflow.core.errors import ConfigurationError, PermanentSendError
from stageflow.db.enums import ActionKind, TemplateChannel
from stageflow.db.models import (
    AutomationStep,
    DripCampaignStep,
    MessageTemplate,
    Organization,
    PipelineStage,
    ScheduledExecution,
    TrackedEntity,
)

# Variable pattern for template substitution: {{variable_name}}
VARIABLE_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class RenderedContent:
    subject: str | None
    body: str
    document_ref: str | None = None


# =============================================================================
# Templates
# =============================================================================


def get_template(db: Session, org_id: UUID, template_id: UUID) -> MessageTemplate | None:
    return (
        db.query(MessageTemplate)
        .filter(MessageTemplate.id == template_id, MessageTemplate.organization_id == org_id)
        .first()
    )


def list_templates(db: Session, org_id: UUID, channel: TemplateChannel | None = None) -> list[MessageTemplate]:
    query = db.query(MessageTemplate).filter(MessageTemplate.organization_id == org_id)
    if channel:
        query = query.filter(MessageTemplate.channel == channel.value)
    return query.order_by(MessageTemplate.name).all()


def _validate_template(channel: TemplateChannel, subject: str | None, body: str) -> None:
    if not body or not body.strip():
        raise ConfigurationError("Template body is required")
    if channel == TemplateChannel.EMAIL and not (subject and subject.strip()):
        raise ConfigurationError("Email templates require a subject")


def create_template(
    db: Session,
    org_id: UUID,
    name: str,
    channel: TemplateChannel,
    body: str,
    subject: str | None = None,
) -> MessageTemplate:
    """
    Raises:
        ConfigurationError: missing body, or email template without subject
    """
    _validate_template(channel, subject, body)
    template = MessageTemplate(
        organization_id=org_id,
        name=name,
        channel=channel.value,
        subject=subject if channel == TemplateChannel.EMAIL else None,
        body=body,
    )
    db.add(template)
    db.commit()
    db.refresh(template)
    return template


def update_template(
    db: Session,
    template: MessageTemplate,
    name: str | None = None,
    subject: str | None = None,
    body: str | None = None,
) -> MessageTemplate:
    """Edits apply to sends rendered after the change, including pending ones."""
    if name is not None:
        template.name = name
    if subject is not None:
        template.subject = subject
    if body is not None:
        template.body = body
    _validate_template(TemplateChannel(template.channel), template.subject, template.body)
    db.commit()
    db.refresh(template)
    return template


def delete_template(db: Session, template: MessageTemplate) -> None:
    """Steps referencing the template fall back to their inline content."""
    db.delete(template)
    db.commit()


def require_template(
    db: Session,
    org_id: UUID,
    template_id: UUID | None,
    action_kind: ActionKind,
) -> None:
    """
    Raises:
        ConfigurationError: unknown template or channel mismatch for the action
    """
    if template_id is None:
        return
    template = get_template(db, org_id, template_id)
    if not template:
        raise ConfigurationError(f"Template {template_id} not found")
    expected = TemplateChannel.SMS if action_kind == ActionKind.SMS else TemplateChannel.EMAIL
    if template.channel != expected.value:
        raise ConfigurationError(
            f"Template channel {template.channel} does not match action {action_kind.value}"
        )


# =============================================================================
# Rendering
# =============================================================================


def render_text(text: str | None, variables: dict[str, str], escape: bool = False) -> str:
    """
    Replace {{variable}} placeholders with values.

    Missing variables are replaced with empty string. With escape=True
    values are HTML-escaped (email bodies).
    """
    if not text:
        return ""

    def replace_var(match: re.Match) -> str:
        value = variables.get(match.group(1), "")
        return html.escape(value) if escape else value

    return VARIABLE_PATTERN.sub(replace_var, text)


def build_entity_variables(db: Session, entity: TrackedEntity) -> dict[str, str]:
    """Flat template variables for an entity."""
    org = db.get(Organization, entity.organization_id)
    stage = db.get(PipelineStage, entity.stage_id) if entity.stage_id else None
    return {
        "first_name": entity.first_name or "",
        "last_name": entity.last_name or "",
        "full_name": entity.full_name,
        "email": entity.email or "",
        "phone": entity.phone or "",
        "project_type": entity.project_type or "",
        "stage_name": stage.name if stage else "",
        "event_date": entity.event_date.isoformat() if entity.event_date else "",
        "owner_name": entity.owner.display_name if entity.owner else "",
        "org_name": org.name if org else "",
    }


def _source_step(db: Session, execution: ScheduledExecution) -> AutomationStep | DripCampaignStep:
    if execution.step_id:
        step = db.get(AutomationStep, execution.step_id)
    elif execution.drip_step_id:
        step = db.get(DripCampaignStep, execution.drip_step_id)
    else:
        step = None
    if step is None:
        raise PermanentSendError("Step for this execution no longer exists")
    return step


def render_for_execution(
    db: Session,
    execution: ScheduledExecution,
    entity: TrackedEntity,
) -> RenderedContent:
    """
    Render the content of an execution's step against the entity.

    A template reference wins over inline content; inline content is used
    when the template was removed.

    Raises:
        PermanentSendError: step gone, or nothing to send
    """
    step = _source_step(db, execution)
    action_kind = ActionKind(execution.action_kind)
    variables = build_entity_variables(db, entity)

    template = step.template
    subject = template.subject if template else step.subject
    body = template.body if template else step.body
    document_ref = getattr(step, "document_ref", None)

    if action_kind == ActionKind.DOCUMENT_SEND:
        if not document_ref:
            raise PermanentSendError("Document send has no document reference")
        return RenderedContent(
            subject=render_text(subject, variables) or "A document has been shared with you",
            body=render_text(body, variables, escape=True),
            document_ref=document_ref,
        )

    if not body or not body.strip():
        raise PermanentSendError("No message content configured")
    if action_kind == ActionKind.SMS:
        return RenderedContent(subject=None, body=render_text(body, variables))
    if not subject or not subject.strip():
        raise PermanentSendError("Email has no subject")
    return RenderedContent(
        subject=render_text(subject, variables),
        body=render_text(body, variables, escape=True),
    )
