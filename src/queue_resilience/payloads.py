"""Typed, versioned payload envelopes carried by queue messages.

Producers enqueue one of the payload models below; consumers decode the
stored JSON back into the matching model with ``decode_payload``.

Usage:
    await retry_queue.enqueue("payments", PaymentPayload(order_id="o-1", amount=10, gateway="stripe"))

    async def charge(payload: PaymentPayload) -> None: ...
    poller = RetryQueuePoller(retry_queue, "payments", typed_processor(charge))
"""

from collections.abc import Awaitable, Callable
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from queue_resilience.errors import PayloadDecodeError

PAYLOAD_VERSION = 1
SUPPORTED_VERSIONS = frozenset({PAYLOAD_VERSION})


class NotificationType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class BasePayload(BaseModel):
    """Common envelope fields."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: int = PAYLOAD_VERSION


class PaymentPayload(BasePayload):
    kind: Literal["payment"] = "payment"
    order_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    gateway: str


class NotificationPayload(BasePayload):
    kind: Literal["notification"] = "notification"
    type: NotificationType
    recipient: str = Field(min_length=1)
    message: str


class WebhookPayload(BasePayload):
    kind: Literal["webhook"] = "webhook"
    url: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)


Payload = Annotated[
    PaymentPayload | NotificationPayload | WebhookPayload,
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter[Payload] = TypeAdapter(Payload)


def decode_payload(raw: Any) -> PaymentPayload | NotificationPayload | WebhookPayload:
    """Decode a stored payload (dict or JSON string) into its envelope model.

    Raises:
        PayloadDecodeError: unknown kind, unsupported version or invalid fields
    """
    if isinstance(raw, BasePayload):
        return raw

    try:
        if isinstance(raw, str | bytes):
            payload = _payload_adapter.validate_json(raw)
        else:
            payload = _payload_adapter.validate_python(raw)
    except ValidationError as e:
        raise PayloadDecodeError(str(e), raw=raw) from e

    if payload.version not in SUPPORTED_VERSIONS:
        raise PayloadDecodeError(
            f"unsupported {payload.kind} payload version {payload.version}",
            raw=raw,
        )
    return payload


def typed_processor(
    handler: Callable[[Any], Awaitable[Any]],
) -> Callable[[Any], Awaitable[Any]]:
    """Adapt a handler of decoded envelopes to the raw processor contract.

    A payload that fails to decode raises PayloadDecodeError from the
    processor, so the queue retries and eventually dead-letters it.
    """

    async def processor(raw: Any) -> Any:
        return await handler(decode_payload(raw))

    processor.__name__ = getattr(handler, "__name__", "typed_processor")
    return processor
