"""
services/audit_service.py — Writes security events to the audit trail.

Entries are added to the caller's session and committed with the rest of
the unit of work, so an audit row exists if and only if the action it
describes was persisted.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from clientportal.app.models.audit_entry import AuditEntry

logger = logging.getLogger(__name__)


def record(
        session: Session,
        action: str,
        entity_type: str,
        entity_id: int | None = None,
        actor_user_id: int | None = None,
        ip_address: str | None = None,
        detail: str | None = None,
) -> AuditEntry:
    entry = AuditEntry(
        actor_user_id=actor_user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip_address=ip_address,
        detail=detail,
    )
    session.add(entry)
    logger.info(
        "audit action=%s entity=%s:%s actor=%s ip=%s",
        action, entity_type, entity_id, actor_user_id, ip_address,
    )
    return entry
