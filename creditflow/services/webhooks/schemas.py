"""Provider payload shapes, parsed into tagged variants at the HTTP boundary.

Parsing is strict: a body that does not match the expected shape raises
`PayloadError` instead of being defaulted into something processable.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from creditflow.common.errors import PayloadError

PAYMENT_PROVIDER = "payments"
GENERATION_PROVIDER = "generations"

APPROVED_PAYMENT_STATUSES = frozenset({"approved"})
REJECTED_PAYMENT_STATUSES = frozenset({"rejected", "cancelled"})

NSFW_MARKERS = ("nsfw", "inappropriate", "adult content")


class ProviderRecord(BaseModel):
    """Provider object identified by an `id` that may arrive as a number or a string."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)

    @field_validator("id", mode="before")
    @classmethod
    def normalize_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class _RawPaymentData(ProviderRecord):
    status: str = Field(min_length=1)
    external_reference: str = Field(min_length=1)


class _RawPaymentNotification(ProviderRecord):
    type: str = Field(min_length=1)
    data: dict[str, Any]


class PaymentNotification(BaseModel):
    """A payment status change for one purchase (`external_reference`)."""

    kind: Literal["payment"] = "payment"
    event_id: str
    provider_payment_id: str
    status: str
    purchase_id: str

    @property
    def target_status(self) -> str | None:
        if self.status in APPROVED_PAYMENT_STATUSES:
            return "approved"
        if self.status in REJECTED_PAYMENT_STATUSES:
            return "rejected"
        return None


class UnsupportedPaymentEvent(BaseModel):
    """Any other processor topic (merchant orders, chargebacks...): acknowledged only."""

    kind: Literal["unsupported"] = "unsupported"
    event_id: str
    event_type: str


def parse_payment_event(body: Any) -> PaymentNotification | UnsupportedPaymentEvent:
    try:
        raw = _RawPaymentNotification.model_validate(body)
        if raw.type != "payment":
            return UnsupportedPaymentEvent(event_id=raw.id, event_type=raw.type)
        data = _RawPaymentData.model_validate(raw.data)
    except PydanticValidationError as exc:
        raise PayloadError(f"malformed payment notification: {exc.error_count()} field error(s)") from exc
    return PaymentNotification(
        event_id=raw.id,
        provider_payment_id=data.id,
        status=data.status.lower(),
        purchase_id=data.external_reference,
    )


class VideoInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    duration: float = Field(ge=0)
    fps: float = Field(ge=0)


class Creation(ProviderRecord):
    url: str = Field(min_length=1)
    cover_url: str | None = None
    video: VideoInfo | None = None


class _RawGenerationEvent(ProviderRecord):
    state: str = Field(min_length=1)
    creations: list[Creation] = Field(default_factory=list)
    bgm: bool = False
    err_code: str | None = None
    error: str | None = None


class GenerationSucceeded(BaseModel):
    kind: Literal["success"] = "success"
    task_id: str
    creation: Creation
    bgm: bool = False

    @property
    def event_key(self) -> str:
        return f"{self.task_id}:success"


class GenerationFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    task_id: str
    error: str | None = None

    @property
    def event_key(self) -> str:
        return f"{self.task_id}:failed"

    @property
    def error_code(self) -> str:
        message = (self.error or "").lower()
        if any(marker in message for marker in NSFW_MARKERS):
            return "NSFW_CONTENT"
        return "PROVIDER_ERROR"


class GenerationProgress(BaseModel):
    """Intermediate provider states (created, queueing, processing...)."""

    kind: Literal["progress"] = "progress"
    task_id: str
    state: str

    @property
    def event_key(self) -> str:
        return f"{self.task_id}:{self.state}"


GenerationEvent = GenerationSucceeded | GenerationFailed | GenerationProgress


def parse_generation_event(body: Any) -> GenerationEvent:
    try:
        raw = _RawGenerationEvent.model_validate(body)
    except PydanticValidationError as exc:
        raise PayloadError(f"malformed generation notification: {exc.error_count()} field error(s)") from exc
    state = raw.state.lower()
    if state == "success":
        if not raw.creations:
            raise PayloadError("success notification without creations")
        return GenerationSucceeded(task_id=raw.id, creation=raw.creations[0], bgm=raw.bgm)
    if state == "failed":
        return GenerationFailed(task_id=raw.id, error=raw.err_code or raw.error)
    return GenerationProgress(task_id=raw.id, state=state)


class WebhookAck(BaseModel):
    """Body returned to providers; any 2xx with this shape stops their retries."""

    received: bool = True
    provider: str
    event_id: str
    outcome: str
    duplicate: bool = False
