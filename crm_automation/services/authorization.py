from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation.core.permissions import SYSTEM_ROLE, can_perform
from crm_automation.models.automation import AutomationRule
from crm_automation.models.user import User


@dataclass(frozen=True)
class AuthorizationResult:
    allowed: bool
    role: str | None
    reason: str | None = None


class UserStore(Protocol):
    def get_role(self, user_id: str) -> str | None:
        ...


class SqlUserStore:
    def __init__(self, db: Session):
        self._db = db

    def get_role(self, user_id: str) -> str | None:
        row = self._db.execute(
            select(User.role, User.is_active).where(User.id == user_id)
        ).one_or_none()
        if row is None or not row.is_active:
            return None
        return row.role


def authorize_automation(
    rule: AutomationRule,
    entity_type: str,
    *,
    user_store: UserStore,
) -> AuthorizationResult:
    """Re-check, at execution time, that the rule's creator may update the entity.

    Rules without a creator run with system authority. A creator that no
    longer exists or was deactivated holds no role.
    """
    if rule.created_by is None:
        role: str | None = SYSTEM_ROLE
    else:
        role = user_store.get_role(rule.created_by)

    if role is None:
        return AuthorizationResult(
            allowed=False,
            role=None,
            reason=f"Automation creator {rule.created_by} is missing or inactive",
        )
    if not can_perform(role, "update", entity_type):
        return AuthorizationResult(
            allowed=False,
            role=role,
            reason=f"Automation creator lacks permission: role {role} cannot update {entity_type}",
        )
    return AuthorizationResult(allowed=True, role=role)
