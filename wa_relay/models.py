"""Pydantic models and state enums shared by the relay components.

Models:
    - PendingMessage: a message waiting on the remote API for one tenant
    - DispatchOutcome: result of a single forwarding attempt
    - SendMessagePayload: body accepted by ``POST /send-message``
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _scalar_to_str(value: Any) -> Any:
    """Accept JSON numbers where the remote side is loose about types."""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class LoopState(str, Enum):
    """Lifecycle of the reconciliation loop as shown by ``GET /status``."""

    IDLE = "idle"
    PROCESSING = "processing"
    READY = "ready"


class DeliveryStatus(str, Enum):
    """Status values understood by the remote update endpoint."""

    SENT = "terkirim"
    PENDING = "pending"


class PendingMessage(BaseModel):
    """A notification fetched from the remote API.

    The remote payload uses ``nohp`` for the phone number and ``pesan`` for the
    text; both names are accepted as aliases.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    tenant_id: str
    recipient: Annotated[str, Field(alias="nohp", min_length=1)]
    body: Annotated[str, Field(alias="pesan")]

    @field_validator("id", "tenant_id", "recipient", mode="before")
    @classmethod
    def coerce_numbers(cls, v: Any) -> Any:
        return _scalar_to_str(v)


class DispatchOutcome(BaseModel):
    """Outcome of one dispatch attempt, reported and then discarded."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    tenant_id: str
    delivered: bool

    @property
    def status(self) -> DeliveryStatus:
        return DeliveryStatus.SENT if self.delivered else DeliveryStatus.PENDING


class SendMessagePayload(BaseModel):
    """Body of ``POST /send-message``."""

    phone: Annotated[str, Field(min_length=1)]
    message: str

    @field_validator("phone", mode="before")
    @classmethod
    def coerce_phone(cls, v: Any) -> Any:
        return _scalar_to_str(v)
