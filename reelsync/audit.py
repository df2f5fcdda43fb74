import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from .models import AuditLog

AUDIT_MESSAGE_MAX_LENGTH = 1000


def _normalize_message(value: str) -> str:
    normalized = " ".join(str(value or "").split())
    return normalized[:AUDIT_MESSAGE_MAX_LENGTH]


def add_audit_log(
    db: AsyncSession,
    *,
    action: str,
    message: str,
    actor_user_id: uuid.UUID | None = None,
    target_user_id: uuid.UUID | None = None,
) -> None:
    db.add(
        AuditLog(
            action=action,
            message=_normalize_message(message),
            actor_user_id=actor_user_id,
            target_user_id=target_user_id if target_user_id else actor_user_id,
        )
    )
