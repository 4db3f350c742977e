"""Structured logging helpers (PII-safe)."""

import hashlib
from typing import Any


def build_log_context(
    *,
    org_id: str | None = None,
    entity_id: str | None = None,
    execution_id: str | None = None,
    request_id: str | None = None,
    route: str | None = None,
    method: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if org_id:
        context["org_id"] = org_id
    if entity_id:
        context["entity_id"] = entity_id
    if execution_id:
        context["execution_id"] = execution_id
    if request_id:
        context["request_id"] = request_id
    if route:
        context["route"] = route
    if method:
        context["method"] = method
    return context


def mask_email(email: str | None) -> str:
    if not email:
        return ""
    local, _, domain = email.partition("@")
    prefix = local[:3] if local else ""
    return f"{prefix}...@{domain}" if domain else f"{prefix}..."


def mask_phone(phone: str | None) -> str:
    if not phone:
        return ""
    return f"...{phone[-4:]}"


def hash_recipient(value: str | None) -> str:
    """Stable short hash for correlating logs without storing the address."""
    if not value:
        return ""
    return hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()[:12]
