"""Send handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from stageflow.db.enums import ActionKind
from stageflow.jobs.handlers import actions

ActionHandler = Callable[..., Awaitable[object]]

ACTION_HANDLERS: Mapping[str, ActionHandler] = {
    ActionKind.EMAIL.value: actions.process_email,
    ActionKind.SMS.value: actions.process_sms,
    ActionKind.DOCUMENT_SEND.value: actions.process_document_send,
}


def resolve_action_handler(action_kind: str) -> ActionHandler:
    handler = ACTION_HANDLERS.get(action_kind)
    if not handler:
        raise ValueError(f"Unknown action kind: {action_kind}")
    return handler
