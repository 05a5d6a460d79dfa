"""SMTP transport used to relay messages to the provider.

A :class:`GmailTransport` is created per send with the caller's credentials
and a :class:`TransportProfile` describing how to reach the provider. All
SMTP traffic goes through :mod:`aiosmtplib`, so the event loop keeps serving
status and cancellation requests while a send is in flight.
"""

from __future__ import annotations

import asyncio
import mimetypes
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Optional, Tuple

import aiosmtplib

from .logger import get_logger
from .models import SendRequest

logger = get_logger("GmailRelay.transport")


@dataclass(frozen=True)
class TransportProfile:
    """Connection and message options for one send route.

    Attributes:
        name: Profile identifier (``full`` or ``simple``).
        host: SMTP server hostname.
        port: SMTP server port.
        use_tls: Open the connection with implicit TLS (port 465 style).
        start_tls: Upgrade a plain connection with STARTTLS.
        validate_certs: Verify the server certificate and hostname.
        verify_first: Authenticate explicitly before submitting.
        html_line_breaks: Derive the HTML body by turning newlines into ``<br>``.
        allow_custom_from: Honour the caller supplied ``from`` address.
        allow_attachments: Attach the request attachments.
        full_taxonomy: Classify failures with the complete taxonomy.
        timeout: Socket timeout in seconds.
    """

    name: str
    host: str = "smtp.gmail.com"
    port: int = 465
    use_tls: bool = True
    start_tls: bool = False
    validate_certs: bool = True
    verify_first: bool = True
    html_line_breaks: bool = True
    allow_custom_from: bool = True
    allow_attachments: bool = True
    full_taxonomy: bool = True
    timeout: float = 30.0


def full_profile(host: str = "smtp.gmail.com", port: int = 465, timeout: float = 30.0) -> TransportProfile:
    """Profile for ``/send-gmail``: implicit TLS, verified session, attachments."""
    return TransportProfile(name="full", host=host, port=port, timeout=timeout)


def simple_profile(host: str = "smtp.gmail.com", port: int = 587, timeout: float = 30.0) -> TransportProfile:
    """Profile for ``/send-gmail-simple``: STARTTLS with relaxed certificates."""
    return TransportProfile(
        name="simple",
        host=host,
        port=port,
        use_tls=False,
        start_tls=True,
        validate_certs=False,
        verify_first=False,
        html_line_breaks=False,
        allow_custom_from=False,
        allow_attachments=False,
        full_taxonomy=False,
        timeout=timeout,
    )


def guess_mime(filename: str, content_type: Optional[str] = None) -> Tuple[str, str]:
    """Return ``(maintype, subtype)`` for an attachment."""
    mime = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    maintype, _, subtype = mime.partition("/")
    if not subtype:
        return "application", "octet-stream"
    return maintype, subtype.split(";")[0].strip()


def build_message(request: SendRequest, profile: TransportProfile) -> EmailMessage:
    """Translate a :class:`SendRequest` into an :class:`EmailMessage`."""
    user = request.credentials.user or ""
    sender = request.from_addr if profile.allow_custom_from and request.from_addr else user
    text = request.body_text or ""
    if request.body_html:
        html = request.body_html
    elif profile.html_line_breaks:
        html = text.replace("\n", "<br>")
    else:
        html = text

    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = request.to
    msg["Subject"] = request.subject
    domain = user.rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)
    msg.set_content(text)
    msg.add_alternative(html, subtype="html")

    if profile.allow_attachments:
        for att in request.attachments:
            maintype, subtype = guess_mime(att.filename, att.content_type)
            msg.add_attachment(att.content, maintype=maintype, subtype=subtype, filename=att.filename)
    return msg


class GmailTransport:
    """Authenticated SMTP session bound to one set of credentials."""

    def __init__(self, profile: TransportProfile, user: str, password: str):
        self.profile = profile
        self.user = user
        self.password = password
        self._smtp: Optional[aiosmtplib.SMTP] = None

    def _tls_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.profile.validate_certs:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open a new SMTP connection and authenticate."""
        profile = self.profile
        # Implicit TLS (465): use_tls=True, start_tls=False
        # STARTTLS (587): use_tls=False, start_tls=True
        smtp = aiosmtplib.SMTP(
            hostname=profile.host,
            port=profile.port,
            use_tls=profile.use_tls,
            start_tls=profile.start_tls,
            tls_context=self._tls_context(),
            timeout=profile.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            await smtp.login(self.user, self.password)

        try:
            await asyncio.wait_for(_do_connect(), timeout=profile.timeout + 5.0)
        except BaseException:
            smtp.close()
            raise
        return smtp

    async def _session(self) -> aiosmtplib.SMTP:
        if self._smtp is None:
            self._smtp = await self._connect()
            logger.debug("SMTP session opened on %s:%s for %s", self.profile.host, self.profile.port, self.user)
        return self._smtp

    async def verify(self) -> None:
        """Open the session and check that the server still answers NOOP."""
        smtp = await self._session()
        code, reply = await smtp.noop()
        if code != 250:
            raise aiosmtplib.SMTPResponseException(code, reply)

    async def send(self, message: EmailMessage) -> str:
        """Submit ``message`` and return its delivery identifier."""
        smtp = await self._session()
        refused, _ = await smtp.send_message(message)
        if refused:
            logger.warning("Provider refused some recipients: %s", ", ".join(refused))
        return str(message["Message-ID"])

    async def close(self) -> None:
        """Close the session, ignoring errors from an already broken link."""
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.debug("Ignoring error while closing SMTP session: %s", exc)
            smtp.close()

    async def __aenter__(self) -> "GmailTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
