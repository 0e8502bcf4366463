"""Typed audit payloads, one variant per family of event types.

``AuditDetails`` is a tagged union discriminated by ``event_type``. Each
``LicenseAudit.details`` column holds the JSON dump of exactly one variant.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from licensing.models.license_audit import AuditEventType as E


class RequestInfo(BaseModel):
    """Request context captured by the module guard."""

    model_config = ConfigDict(extra="forbid")

    user_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    path: str | None = None
    method: str | None = None


class _Details(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ValidationSuccessDetails(_Details):
    event_type: Literal[E.VALIDATION_SUCCESS] = E.VALIDATION_SUCCESS
    reason: str = "Validation successful"
    tier: str | None = None
    expires_at: datetime | None = None
    request: RequestInfo | None = None


class AccessDeniedDetails(_Details):
    event_type: Literal[E.LICENSE_NOT_FOUND, E.MODULE_DISABLED, E.LICENSE_EXPIRED]
    reason: str
    license_status: str | None = None
    expires_at: datetime | None = None
    source: Literal["validation", "usage"] = "validation"
    request: RequestInfo | None = None


class LimitDetails(_Details):
    event_type: Literal[E.LIMIT_EXCEEDED, E.LIMIT_WARNING]
    limit_type: str
    current_value: int
    limit_value: int
    requested_amount: int | None = None
    dropped_amount: int | None = None
    percentage: int | None = None
    period: str | None = None
    batched: bool = False


class UsageTrackedDetails(_Details):
    event_type: Literal[E.USAGE_TRACKED] = E.USAGE_TRACKED
    limit_type: str
    amount: int
    new_value: int
    period: str
    batched: bool = False


class LicenseChangeDetails(_Details):
    event_type: Literal[
        E.LICENSE_CREATED, E.LICENSE_UPDATED, E.MODULE_ACTIVATED, E.MODULE_DEACTIVATED
    ]
    reason: str | None = None
    previous_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None


AuditDetails = Annotated[
    Union[
        ValidationSuccessDetails,
        AccessDeniedDetails,
        LimitDetails,
        UsageTrackedDetails,
        LicenseChangeDetails,
    ],
    Field(discriminator="event_type"),
]

_adapter: TypeAdapter[AuditDetails] = TypeAdapter(AuditDetails)

DETAILS_MODELS: dict[E, type[_Details]] = {
    event: model
    for model in get_args(get_args(AuditDetails)[0])
    for event in get_args(model.model_fields["event_type"].annotation)
}

_missing = set(E) - set(DETAILS_MODELS)
if _missing:
    raise RuntimeError(f"Audit event types without a details model: {sorted(_missing)}")


def parse_details(event_type: E, details: BaseModel | dict[str, Any] | None) -> _Details:
    """Validate a payload against the variant registered for ``event_type``.

    Raises ``ValueError`` when a model instance for another event type is
    passed, and ``pydantic.ValidationError`` for malformed payloads.
    """
    if isinstance(details, BaseModel):
        payload = details.model_dump()
        tagged = payload.get("event_type")
        if tagged is not None and tagged != E(event_type):
            raise ValueError(f"Details tagged {tagged} cannot be logged as {event_type}")
    else:
        payload = dict(details or {})
    payload["event_type"] = E(event_type)
    return _adapter.validate_python(payload)
