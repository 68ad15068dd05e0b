from crm_automation.core.observability import STATUS_CODE_MAP, error_body
from crm_automation.schemas.common import ErrorOut

_DESCRIPTIONS: dict[int, str] = {
    401: "Missing or invalid internal token",
    404: "Automation rule not found",
    422: "Request payload failed validation",
    503: "Database, broker or idempotency backend unavailable",
    500: "Internal server error",
}


def error_responses(*status_codes: int, path: str = "/automations") -> dict[int, dict]:
    """OpenAPI `responses=` entries documenting the JSON error envelope."""
    documented: dict[int, dict] = {}
    for status_code in status_codes:
        description = _DESCRIPTIONS.get(status_code, "HTTP error")
        example = error_body(
            code=STATUS_CODE_MAP.get(status_code, "http_error"),
            message=description,
            request_id="request-id",
            path=path,
        )
        documented[status_code] = {
            "model": ErrorOut,
            "description": description,
            "content": {"application/json": {"example": ErrorOut.model_validate(example).model_dump()}},
        }
    return documented
