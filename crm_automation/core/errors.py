class AutomationError(Exception):
    """Base class for errors raised by the automation engine."""


class UnsupportedPayloadVersion(AutomationError):
    def __init__(self, kind: str, version: object):
        self.kind = kind
        self.version = version
        super().__init__(f"Unsupported {kind} payload version {version!r}")


class InvalidRulePayload(AutomationError):
    def __init__(self, kind: str, reason: str):
        self.kind = kind
        self.reason = reason
        super().__init__(f"Invalid {kind} payload: {reason}")


class ActionConfigError(AutomationError):
    pass


class UnknownEntityType(AutomationError):
    def __init__(self, entity_type: str):
        self.entity_type = entity_type
        super().__init__(f"Unknown entity type '{entity_type}'")


class InfrastructureError(Exception):
    """Transient failure of a store, broker or provider. Safe to retry the whole job."""


class EmailDeliveryError(InfrastructureError):
    pass


def short_error(value: Exception | str, *, limit: int = 500) -> str:
    text = str(value).strip()
    if not text and isinstance(value, Exception):
        text = type(value).__name__
    return (text or "Automation action failed")[:limit]
