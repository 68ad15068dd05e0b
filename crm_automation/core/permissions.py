ROLE_PERMISSION_MATRIX: dict[str, dict[str, set[str]]] = {
    "admin": {
        "deal": {"create", "read", "update", "delete", "manage"},
        "contact": {"create", "read", "update", "delete", "manage"},
        "company": {"create", "read", "update", "delete", "manage"},
        "task": {"create", "read", "update", "delete", "manage"},
        "pipeline": {"create", "read", "update", "delete", "manage"},
        "automation": {"create", "read", "update", "delete", "manage"},
        "user": {"create", "read", "update", "delete", "manage"},
        "report": {"create", "read", "update", "delete", "manage"},
    },
    "manager": {
        "deal": {"create", "read", "update", "delete"},
        "contact": {"create", "read", "update", "delete"},
        "company": {"create", "read", "update", "delete"},
        "task": {"create", "read", "update", "delete"},
        "pipeline": {"read"},
        "automation": {"create", "read", "update"},
        "user": {"read"},
        "report": {"read"},
    },
    "member": {
        "deal": {"create", "read", "update"},
        "contact": {"create", "read", "update"},
        "company": {"create", "read", "update"},
        "task": {"create", "read", "update"},
        "pipeline": {"read"},
        "automation": {"read"},
        "user": {"read"},
        "report": {"read"},
    },
    "viewer": {
        "deal": {"read"},
        "contact": {"read"},
        "company": {"read"},
        "task": {"read"},
        "pipeline": {"read"},
        "automation": set(),
        "user": {"read"},
        "report": {"read"},
    },
}

SYSTEM_ROLE = "ADMIN"


def role_permissions(role: str | None, resource: str) -> set[str]:
    normalized_role = (role or "").strip().lower()
    normalized_resource = (resource or "").strip().lower()
    return set(ROLE_PERMISSION_MATRIX.get(normalized_role, {}).get(normalized_resource, set()))


def can_perform(role: str | None, action: str, resource: str) -> bool:
    normalized_action = (action or "").strip().lower()
    if not normalized_action:
        return False
    return normalized_action in role_permissions(role, resource)
