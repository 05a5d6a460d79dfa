"""Core orchestration logic for the Gmail relay."""

from __future__ import annotations

import ssl
import sys
import time
from email.errors import MessageError
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import aiosmtplib

from . import __version__
from .gate import GateBusyError, SendGate
from .logger import get_logger
from .models import (
    ALREADY_IN_PROGRESS_MESSAGE,
    INCOMPLETE_DATA_MESSAGE,
    INTERRUPTED_MESSAGE,
    INVALID_MESSAGE_DATA_MESSAGE,
    FailureKind,
    SendFailure,
    SendRequest,
    SendResult,
    SendSuccess,
)
from .prometheus import RelayMetrics
from .transport import GmailTransport, TransportProfile, build_message, full_profile, simple_profile

ENDPOINTS = {
    "GET /api": "API information",
    "GET /status": "Server status (monitor)",
    "GET /health": "Simple health check",
    "GET /sending-status": "Status of the current send",
    "GET /metrics": "Prometheus metrics",
    "POST /send-gmail": "Send an e-mail through Gmail (full)",
    "POST /send-gmail-simple": "Send an e-mail through Gmail (simplified)",
    "POST /stop-sending": "Stop the send in progress",
}

QUOTA_MARKERS = ("quota", "limit exceeded", "too many", "rate limit")
BLOCKED_MARKERS = ("message rejected", "suspicious activity")
# aiosmtplib reports handshake failures as SMTPConnectError text
CERTIFICATE_MARKERS = ("self signed certificate", "certificate verify failed")

AUTH_MESSAGE = "Authentication error. Check the e-mail address and app password."
INVALID_LOGIN_MESSAGE = "Invalid login. Check the Gmail credentials."
ENVELOPE_MESSAGE = "Envelope error. Check the recipients."
CERTIFICATE_MESSAGE = "Certificate error. Try the simplified send route."
QUOTA_MESSAGE = (
    "Gmail daily sending limit reached!\n\n"
    "You have reached today's Gmail sending limit.\n"
    "Please wait until tomorrow before sending more e-mails."
)
BLOCKED_MESSAGE = (
    "E-mail blocked by Gmail!\n\n"
    "Gmail detected unusual activity and blocked the send.\n"
    "Wait a few hours or try again tomorrow."
)

TransportFactory = Callable[[TransportProfile, str, str], Any]


def _error_text(exc: Exception) -> str:
    """Render a transport exception as a readable message."""
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        return f"{exc.code} {exc.message}"
    if isinstance(exc, aiosmtplib.SMTPRecipientsRefused):
        return "; ".join(f"{r.recipient}: {r.code} {r.message}" for r in exc.recipients)
    return str(exc) or exc.__class__.__name__


def classify_transport_error(exc: Exception, *, full_taxonomy: bool = True) -> Tuple[FailureKind, str, bool]:
    """
    Map a transport exception onto the failure taxonomy.

    Returns:
        tuple: (kind, message, should_wait)
            - should_wait is True when the provider asks the caller to back
              off for a full reset period instead of retrying right away
    """
    text = _error_text(exc)
    lowered = f"{text} {exc}".lower()

    if full_taxonomy:
        if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
            return FailureKind.AUTHENTICATION_FAILED, AUTH_MESSAGE, False
        if isinstance(exc, (aiosmtplib.SMTPRecipientsRefused, aiosmtplib.SMTPSenderRefused)):
            return FailureKind.ENVELOPE_REJECTED, ENVELOPE_MESSAGE, False
        if "invalid login" in lowered:
            return FailureKind.AUTHENTICATION_FAILED, INVALID_LOGIN_MESSAGE, False
        if isinstance(exc, ssl.SSLCertVerificationError) or any(
            marker in lowered for marker in CERTIFICATE_MARKERS
        ):
            return FailureKind.TRANSPORT_ERROR, CERTIFICATE_MESSAGE, False

    if any(marker in lowered for marker in QUOTA_MARKERS):
        return FailureKind.QUOTA_EXCEEDED, QUOTA_MESSAGE, True

    if full_taxonomy and any(marker in lowered for marker in BLOCKED_MARKERS):
        return FailureKind.SUSPICIOUS_ACTIVITY_BLOCKED, BLOCKED_MESSAGE, True

    return FailureKind.TRANSPORT_ERROR, text, False


class RelayService:
    """Coordinate the send gate, the SMTP transport and status reporting."""

    def __init__(
        self,
        *,
        port: int = 3001,
        service_name: str = "Email Server",
        profiles: Optional[Mapping[str, TransportProfile]] = None,
        transport_factory: TransportFactory = GmailTransport,
        gate: SendGate | None = None,
        metrics: RelayMetrics | None = None,
        logger=None,
    ):
        self.port = port
        self.service_name = service_name
        self.version = __version__
        self.profiles: Dict[str, TransportProfile] = dict(
            profiles or {"full": full_profile(), "simple": simple_profile()}
        )
        self.transport_factory = transport_factory
        self.gate = gate or SendGate()
        self.metrics = metrics or RelayMetrics()
        self.logger = logger or get_logger()
        self.started_at = datetime.now(timezone.utc)
        self._started_monotonic = time.monotonic()

    # --------------------------------------------------------------------- utils
    @staticmethod
    def _utc_now_iso() -> str:
        """Return the current UTC timestamp as ISO-8601 string."""
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    @staticmethod
    def _memory_usage_mb() -> float:
        """Peak resident set size of the process, in MiB (0 where unavailable)."""
        if sys.platform == "win32":
            return 0.0
        import resource

        usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        # ru_maxrss is reported in bytes on macOS and in KiB elsewhere
        divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
        return round(usage / divisor, 2)

    def uptime(self) -> float:
        return time.monotonic() - self._started_monotonic

    # --------------------------------------------------------------------- send
    async def send(self, request: SendRequest, profile: str = "full") -> SendResult:
        """Relay one e-mail, holding the send gate for the whole attempt.

        Validation happens before the gate is touched. A second call while a
        send is in flight is rejected with ``AlreadyInProgress``. The gate is
        released on every exit path; unexpected faults propagate after the
        release.
        """
        transport_profile = self.profiles[profile]
        missing = request.missing_fields()
        if missing:
            self.logger.warning("Rejected %s send, missing fields: %s", profile, ", ".join(missing))
            return self._failed(profile, SendFailure(FailureKind.INVALID_INPUT, INCOMPLETE_DATA_MESSAGE))

        try:
            message = build_message(request, transport_profile)
        except (ValueError, MessageError) as exc:
            self.logger.warning("Rejected %s send to %r, invalid message data: %s", profile, request.to, exc)
            return self._failed(profile, SendFailure(FailureKind.INVALID_INPUT, INVALID_MESSAGE_DATA_MESSAGE))

        try:
            with self.gate.held():
                self.metrics.set_sending(True)
                try:
                    return await self._deliver(request, message, transport_profile)
                finally:
                    self.metrics.set_sending(False)
        except GateBusyError:
            self.logger.warning("Rejected %s send to %s: a send is already in progress", profile, request.to)
            return self._failed(profile, SendFailure(FailureKind.ALREADY_IN_PROGRESS, ALREADY_IN_PROGRESS_MESSAGE))

    async def _deliver(self, request: SendRequest, message, profile: TransportProfile) -> SendResult:
        """Run the transport with cancellation checkpoints around each call."""
        credentials = request.credentials
        self.logger.info("Sending e-mail to %s (profile=%s)", request.to, profile.name)

        async with self.transport_factory(profile, credentials.user, credentials.secret) as transport:
            if self.gate.cancel_requested:
                return self._interrupted(profile)
            try:
                if profile.verify_first:
                    await transport.verify()
                if self.gate.cancel_requested:
                    return self._interrupted(profile)
                delivery_id = await transport.send(message)
            except Exception as exc:
                return self._transport_failed(exc, profile)

            total = self.gate.record_sent()
            self.metrics.inc_sent(profile.name)
            self.logger.info("E-mail sent successfully: %s (total=%d)", delivery_id, total)
            return SendSuccess(delivery_id=delivery_id, total_sent=total)

    def _interrupted(self, profile: TransportProfile) -> SendFailure:
        self.logger.info("Stop request observed at checkpoint, send aborted (profile=%s)", profile.name)
        return self._failed(
            profile.name,
            SendFailure(FailureKind.INTERRUPTED, INTERRUPTED_MESSAGE, was_interrupted=True),
        )

    def _transport_failed(self, exc: Exception, profile: TransportProfile) -> SendFailure:
        if self.gate.cancel_requested:
            self.logger.warning("Send interrupted by the user, transport reported: %s", exc)
            return self._failed(
                profile.name,
                SendFailure(FailureKind.INTERRUPTED, INTERRUPTED_MESSAGE, was_interrupted=True),
            )
        kind, message, should_wait = classify_transport_error(exc, full_taxonomy=profile.full_taxonomy)
        self.logger.error("Error sending e-mail (profile=%s, kind=%s): %s", profile.name, kind.value, exc)
        return self._failed(profile.name, SendFailure(kind, message, should_wait=should_wait))

    def _failed(self, profile: str, failure: SendFailure) -> SendFailure:
        self.metrics.inc_failure(profile, failure.kind.value)
        return failure

    def stop_sending(self) -> bool:
        """Ask the in-flight send to stop at its next checkpoint."""
        accepted = self.gate.request_cancel()
        if accepted:
            self.metrics.inc_cancel_request()
            self.logger.info("Stop requested by the user")
        return accepted

    # ------------------------------------------------------------------- status
    def api_info(self) -> Dict[str, Any]:
        return {
            "message": f"{self.service_name} API",
            "version": self.version,
            "endpoints": dict(ENDPOINTS),
        }

    def status(self) -> Dict[str, Any]:
        """Operational snapshot used by external monitors."""
        counter = self.gate.counter
        return {
            "status": "online",
            "port": self.port,
            "uptime": round(self.uptime(), 3),
            "startTime": self.started_at.isoformat().replace("+00:00", "Z"),
            "memory": {"usage": self._memory_usage_mb()},
            "emails": {"today": counter.today, "total": counter.total},
            "timestamp": self._utc_now_iso(),
        }

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": self._utc_now_iso(),
            "service": self.service_name,
            "is_sending": self.gate.busy,
        }

    def sending_status(self) -> Dict[str, Any]:
        return {
            "is_sending": self.gate.busy,
            "stop_requested": self.gate.cancel_requested,
            "email_count": self.gate.total_sent,
        }
