"""Data models for the Gmail relay.

This module defines the in-memory request/result types used by the send
orchestrator and the pydantic payloads that document the HTTP surface.

Models:
    - FailureKind: Stable taxonomy of send failures
    - SendRequest: Validated-on-send request with decoded attachments
    - SendSuccess / SendFailure: Outcome of a send operation
    - SendPayload: JSON body accepted by the send routes
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

INCOMPLETE_DATA_MESSAGE = "Incomplete data. Check user, password, to, subject and text."
INVALID_MESSAGE_DATA_MESSAGE = "Invalid e-mail data. Addresses and subject may not contain line breaks."
ALREADY_IN_PROGRESS_MESSAGE = "A send is already in progress. Wait for it or cancel the current send."
INTERRUPTED_MESSAGE = "Sending interrupted by the user"
SENT_MESSAGE = "E-mail sent successfully!"


class FailureKind(str, Enum):
    """Failure taxonomy reported to callers.

    Attributes:
        INVALID_INPUT: A required field is missing; the transport is never touched.
        ALREADY_IN_PROGRESS: Another send holds the gate.
        INTERRUPTED: Cancellation was requested and observed.
        AUTHENTICATION_FAILED: The provider rejected the credentials.
        ENVELOPE_REJECTED: The provider rejected the sender or recipients.
        QUOTA_EXCEEDED: Provider-side sending limit reached.
        SUSPICIOUS_ACTIVITY_BLOCKED: The provider flagged the send as abusive.
        TRANSPORT_ERROR: Any other provider or network failure.
    """

    INVALID_INPUT = "InvalidInput"
    ALREADY_IN_PROGRESS = "AlreadyInProgress"
    INTERRUPTED = "Interrupted"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    ENVELOPE_REJECTED = "EnvelopeRejected"
    QUOTA_EXCEEDED = "QuotaExceeded"
    SUSPICIOUS_ACTIVITY_BLOCKED = "SuspiciousActivityBlocked"
    TRANSPORT_ERROR = "TransportError"

    @property
    def http_status(self) -> int:
        """HTTP status code used when this failure is returned over the API."""
        if self is FailureKind.INVALID_INPUT:
            return 400
        if self is FailureKind.ALREADY_IN_PROGRESS:
            return 429
        return 500


@dataclass(frozen=True)
class Credentials:
    user: Optional[str]
    secret: Optional[str]


@dataclass(frozen=True)
class Attachment:
    filename: str
    content: bytes
    content_type: Optional[str] = None


@dataclass
class SendRequest:
    """A single e-mail to relay with the caller's credentials."""

    credentials: Credentials
    to: Optional[str]
    subject: Optional[str]
    body_text: Optional[str]
    from_addr: Optional[str] = None
    body_html: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)

    def missing_fields(self) -> List[str]:
        """Return the names of required fields that are missing or empty."""
        required = {
            "user": self.credentials.user,
            "password": self.credentials.secret,
            "to": self.to,
            "subject": self.subject,
            "text": self.body_text,
        }
        return [name for name, value in required.items() if not value]


@dataclass(frozen=True)
class SendSuccess:
    delivery_id: str
    total_sent: int
    ok = True

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": SENT_MESSAGE,
            "messageId": self.delivery_id,
            "emailCount": self.total_sent,
        }


@dataclass(frozen=True)
class SendFailure:
    kind: FailureKind
    message: str
    should_wait: bool = False
    was_interrupted: bool = False
    ok = False

    @property
    def http_status(self) -> int:
        return self.kind.http_status

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": False,
            "kind": self.kind.value,
            "message": self.message,
            "shouldWait": self.should_wait,
            "interrupted": self.was_interrupted,
        }


SendResult = Union[SendSuccess, SendFailure]


class AttachmentPayload(BaseModel):
    """Attachment carried inline as a base64 string."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    filename: Optional[str] = None
    content: bytes
    content_type: Optional[str] = None

    @field_validator("content", mode="before")
    @classmethod
    def decode_base64(cls, value: Any) -> bytes:
        """Decode the wire representation into raw bytes."""
        if value is None:
            raise ValueError("attachment content is required")
        if isinstance(value, bytes):
            return value
        if not isinstance(value, str):
            raise ValueError("attachment content must be a base64 string")
        try:
            return base64.b64decode(value)
        except binascii.Error as exc:
            raise ValueError(f"invalid base64 attachment content: {exc}") from exc


class SendPayload(BaseModel):
    """JSON body accepted by ``/send-gmail`` and ``/send-gmail-simple``.

    Every field is optional at the schema level: missing required values are
    reported by the orchestrator as ``InvalidInput``.
    """

    model_config = ConfigDict(populate_by_name=True)

    user: Optional[str] = None
    password: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[Union[List[str], str]] = None
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None
    attachments: Optional[List[AttachmentPayload]] = None

    def to_request(self) -> SendRequest:
        """Convert the HTTP payload into a :class:`SendRequest`."""
        if isinstance(self.to, list):
            to_value = ", ".join(addr.strip() for addr in self.to if addr and addr.strip())
        else:
            to_value = self.to
        attachments = [
            Attachment(
                filename=att.filename or "file.bin",
                content=att.content,
                content_type=att.content_type,
            )
            for att in self.attachments or []
        ]
        return SendRequest(
            credentials=Credentials(user=self.user, secret=self.password),
            to=to_value,
            subject=self.subject,
            body_text=self.text,
            from_addr=self.from_,
            body_html=self.html,
            attachments=attachments,
        )


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(CamelModel):
    status: str
    timestamp: str
    service: str
    is_sending: bool


class SendingStatusResponse(CamelModel):
    is_sending: bool
    stop_requested: bool
    email_count: int


class StopSendingResponse(BaseModel):
    success: bool
    message: str


class ApiInfoResponse(BaseModel):
    message: str
    version: str
    endpoints: Dict[str, str]
