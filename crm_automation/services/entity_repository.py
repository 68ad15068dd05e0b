from datetime import date, datetime
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.orm import Session

from crm_automation.core.errors import ActionConfigError, UnknownEntityType
from crm_automation.db.base import Base
from crm_automation.models.crm import Company, Contact, Deal, Task

_PROTECTED_FIELDS = {"id", "created_at", "updated_at"}


def _json_safe(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class EntityRepository:
    """Column-level access to one CRM entity type, returned as plain snapshots."""

    def __init__(self, entity_type: str, model: type[Base], *, protected_fields: set[str] | None = None):
        self.entity_type = entity_type
        self.model = model
        self.protected_fields = _PROTECTED_FIELDS | (protected_fields or set())
        self._columns = {attr.key for attr in inspect(model).column_attrs}

    def snapshot(self, instance: Base) -> dict[str, Any]:
        return {key: _json_safe(getattr(instance, key)) for key in sorted(self._columns)}

    def get(self, db: Session, entity_id: str) -> dict[str, Any] | None:
        instance = db.get(self.model, entity_id)
        if instance is None:
            return None
        return self.snapshot(instance)

    def update(self, db: Session, entity_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        for field in patch:
            if field not in self._columns:
                raise ActionConfigError(f"Unknown field '{field}' on {self.entity_type}")
            if field in self.protected_fields:
                raise ActionConfigError(f"Field '{field}' on {self.entity_type} cannot be updated by automations")

        instance = db.get(self.model, entity_id)
        if instance is None:
            raise LookupError(f"{self.entity_type} {entity_id} no longer exists")
        for field, value in patch.items():
            setattr(instance, field, value)
        db.flush()
        return self.snapshot(instance)

    def create(self, db: Session, data: dict[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(data) - self._columns)
        if unknown:
            raise ActionConfigError(f"Unknown fields for {self.entity_type}: {', '.join(unknown)}")
        instance = self.model(**data)
        db.add(instance)
        db.flush()
        return self.snapshot(instance)


ENTITY_REPOSITORIES: dict[str, EntityRepository] = {
    "deal": EntityRepository("deal", Deal),
    "contact": EntityRepository("contact", Contact),
    "company": EntityRepository("company", Company),
    "task": EntityRepository("task", Task, protected_fields={"is_automated"}),
}


def get_entity_repository(entity_type: str) -> EntityRepository:
    normalized = (entity_type or "").strip().lower()
    repository = ENTITY_REPOSITORIES.get(normalized)
    if repository is None:
        raise UnknownEntityType(entity_type)
    return repository
