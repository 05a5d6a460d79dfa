import asyncio
import ssl

import aiosmtplib
import pytest

from gmail_relay.core import (
    BLOCKED_MESSAGE,
    QUOTA_MESSAGE,
    RelayService,
    classify_transport_error,
)
from gmail_relay.models import (
    Attachment,
    Credentials,
    FailureKind,
    INCOMPLETE_DATA_MESSAGE,
    INVALID_MESSAGE_DATA_MESSAGE,
    SendFailure,
    SendRequest,
    SendSuccess,
)


def make_request(**overrides) -> SendRequest:
    values = dict(
        credentials=Credentials(user="sender@gmail.com", secret="app-password"),
        to="dest@example.com",
        subject="Hello",
        body_text="Line one\nLine two",
    )
    values.update(overrides)
    return SendRequest(**values)


def assert_gate_free(service: RelayService):
    assert service.gate.busy is False
    assert service.gate.cancel_requested is False


def failure_count(service: RelayService, kind: FailureKind, profile: str = "full"):
    return service.metrics.registry.get_sample_value(
        "gmr_failures_total", {"profile": profile, "kind": kind.value}
    )


@pytest.mark.asyncio
async def test_successful_send_counts_and_releases(service, transport_factory):
    result = await service.send(make_request())

    assert isinstance(result, SendSuccess)
    assert result.delivery_id == "abc123"
    assert result.total_sent == 1
    assert_gate_free(service)

    transport = transport_factory.created[0]
    assert transport.calls == ["verify", "send"]
    assert transport.closed is True
    assert (transport.user, transport.password) == ("sender@gmail.com", "app-password")
    assert transport.profile.name == "full"
    assert service.metrics.registry.get_sample_value("gmr_sent_total", {"profile": "full"}) == 1.0


@pytest.mark.asyncio
async def test_missing_field_never_touches_gate_or_transport(service, transport_factory):
    result = await service.send(make_request(subject=None))

    assert isinstance(result, SendFailure)
    assert result.kind is FailureKind.INVALID_INPUT
    assert result.message == INCOMPLETE_DATA_MESSAGE
    assert result.http_status == 400
    assert transport_factory.created == []
    assert service.gate.total_sent == 0
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_empty_strings_count_as_missing(service, transport_factory):
    request = make_request(credentials=Credentials(user="sender@gmail.com", secret=""))

    result = await service.send(request)

    assert result.kind is FailureKind.INVALID_INPUT
    assert transport_factory.created == []


@pytest.mark.asyncio
@pytest.mark.parametrize("profile", ["full", "simple"])
@pytest.mark.parametrize(
    "overrides",
    [
        {"subject": "Monthly report\nsecond line"},
        {"to": "dest@example.com\r\nBcc: other@example.com"},
    ],
)
async def test_header_line_breaks_are_invalid_input(service, transport_factory, profile, overrides):
    result = await service.send(make_request(**overrides), profile=profile)

    assert isinstance(result, SendFailure)
    assert result.kind is FailureKind.INVALID_INPUT
    assert result.message == INVALID_MESSAGE_DATA_MESSAGE
    assert result.http_status == 400
    assert transport_factory.created == []
    assert failure_count(service, FailureKind.INVALID_INPUT, profile=profile) == 1.0
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_invalid_input_is_reported_even_while_busy(service, transport_factory):
    service.gate.try_acquire()

    result = await service.send(make_request(to=""))

    assert result.kind is FailureKind.INVALID_INPUT
    # The rejected call does not release a gate it never owned
    assert service.gate.busy is True


@pytest.mark.asyncio
async def test_send_while_gate_held_is_rejected(service, transport_factory):
    service.gate.try_acquire()
    service.gate.request_cancel()

    result = await service.send(make_request())

    assert isinstance(result, SendFailure)
    assert result.kind is FailureKind.ALREADY_IN_PROGRESS
    assert result.http_status == 429
    assert transport_factory.created == []
    assert service.gate.status() == {"busy": True, "cancel_requested": True, "total_sent": 0}
    assert failure_count(service, FailureKind.ALREADY_IN_PROGRESS) == 1.0


@pytest.mark.asyncio
async def test_second_concurrent_send_is_rejected(service, transport_factory):
    release = transport_factory.block_send()
    first = asyncio.create_task(service.send(make_request()))
    await transport_factory.send_started.wait()

    second = await service.send(make_request(to="other@example.com"))

    assert second.kind is FailureKind.ALREADY_IN_PROGRESS
    assert service.gate.busy is True
    assert len(transport_factory.created) == 1

    release.set()
    result = await first
    assert isinstance(result, SendSuccess)
    assert result.total_sent == 1
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_cancel_before_verify_skips_transport_calls(service, transport_factory):
    transport_factory.on_create = service.stop_sending

    result = await service.send(make_request())

    assert result.kind is FailureKind.INTERRUPTED
    assert result.was_interrupted is True
    assert transport_factory.created[0].calls == []
    assert service.gate.total_sent == 0
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_cancel_during_verify_skips_submission(service, transport_factory):
    transport_factory.on_verify = service.stop_sending

    result = await service.send(make_request())

    assert result.kind is FailureKind.INTERRUPTED
    assert transport_factory.created[0].calls == ["verify"]
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_cancel_during_submission_then_failure_reports_interrupted(service, transport_factory):
    release = transport_factory.block_send()
    transport_factory.send_error = aiosmtplib.SMTPServerDisconnected("Connection unexpectedly closed")
    task = asyncio.create_task(service.send(make_request()))
    await transport_factory.send_started.wait()

    assert service.stop_sending() is True
    assert service.stop_sending() is True
    release.set()
    result = await task

    assert result.kind is FailureKind.INTERRUPTED
    assert result.was_interrupted is True
    assert result.should_wait is False
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_cancel_during_submission_does_not_undo_a_delivered_message(service, transport_factory):
    transport_factory.on_send = service.stop_sending

    result = await service.send(make_request())

    assert isinstance(result, SendSuccess)
    assert service.gate.total_sent == 1
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_quota_failure_asks_caller_to_wait(service, transport_factory):
    transport_factory.send_error = aiosmtplib.SMTPDataError(550, "5.4.5 Daily user sending limit exceeded")

    result = await service.send(make_request())

    assert result.kind is FailureKind.QUOTA_EXCEEDED
    assert result.should_wait is True
    assert result.was_interrupted is False
    assert result.message == QUOTA_MESSAGE
    assert result.http_status == 500
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_verify_failure_is_classified(service, transport_factory):
    transport_factory.verify_error = aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Username and Password not accepted")

    result = await service.send(make_request())

    assert result.kind is FailureKind.AUTHENTICATION_FAILED
    assert transport_factory.created[0].calls == ["verify"]
    assert failure_count(service, FailureKind.AUTHENTICATION_FAILED) == 1.0
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_unexpected_fault_propagates_after_release(service, transport_factory):
    transport_factory.create_error = RuntimeError("transport misconfigured")

    with pytest.raises(RuntimeError, match="misconfigured"):
        await service.send(make_request())

    assert_gate_free(service)
    assert service.gate.try_acquire() is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        None,
        aiosmtplib.SMTPAuthenticationError(535, "bad credentials"),
        aiosmtplib.SMTPRecipientsRefused([aiosmtplib.SMTPRecipientRefused(550, "no such user", "dest@example.com")]),
        aiosmtplib.SMTPDataError(421, "4.7.0 Too many messages"),
        aiosmtplib.SMTPDataError(550, "5.7.1 Message rejected"),
        ConnectionResetError("Connection reset by peer"),
    ],
)
async def test_gate_released_on_every_outcome(service, transport_factory, error):
    transport_factory.send_error = error

    await service.send(make_request())

    assert_gate_free(service)


@pytest.mark.asyncio
async def test_counter_only_moves_on_success(service, transport_factory):
    first = await service.send(make_request())
    transport_factory.send_error = aiosmtplib.SMTPDataError(451, "temporary failure")
    failed = await service.send(make_request())
    transport_factory.send_error = None
    third = await service.send(make_request())

    assert first.total_sent == 1
    assert isinstance(failed, SendFailure)
    assert third.total_sent == 2
    assert service.gate.total_sent == 2


@pytest.mark.asyncio
async def test_simple_profile_skips_verify_and_custom_from(service, transport_factory):
    request = make_request(
        from_addr="Custom <custom@example.com>",
        attachments=[Attachment(filename="a.txt", content=b"data", content_type="text/plain")],
    )

    result = await service.send(request, profile="simple")

    assert isinstance(result, SendSuccess)
    transport = transport_factory.created[0]
    assert transport.calls == ["send"]
    assert transport.profile.name == "simple"
    message = transport.messages[0]
    assert message["From"] == "sender@gmail.com"
    assert list(message.iter_attachments()) == []


@pytest.mark.asyncio
async def test_simple_profile_uses_reduced_taxonomy(service, transport_factory):
    transport_factory.send_error = aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Username and Password not accepted")

    result = await service.send(make_request(), profile="simple")

    assert result.kind is FailureKind.TRANSPORT_ERROR
    assert "535" in result.message
    assert failure_count(service, FailureKind.TRANSPORT_ERROR, profile="simple") == 1.0


@pytest.mark.parametrize(
    "exc, kind, should_wait",
    [
        (aiosmtplib.SMTPAuthenticationError(535, "bad"), FailureKind.AUTHENTICATION_FAILED, False),
        (aiosmtplib.SMTPSenderRefused(553, "sender rejected", "a@b.c"), FailureKind.ENVELOPE_REJECTED, False),
        (aiosmtplib.SMTPRecipientsRefused([aiosmtplib.SMTPRecipientRefused(550, "nope", "x@y.z")]), FailureKind.ENVELOPE_REJECTED, False),
        (aiosmtplib.SMTPException("Invalid login: 535"), FailureKind.AUTHENTICATION_FAILED, False),
        (aiosmtplib.SMTPDataError(552, "Quota exceeded for this account"), FailureKind.QUOTA_EXCEEDED, True),
        (aiosmtplib.SMTPDataError(421, "Rate limit reached"), FailureKind.QUOTA_EXCEEDED, True),
        (aiosmtplib.SMTPDataError(550, "Blocked for suspicious activity"), FailureKind.SUSPICIOUS_ACTIVITY_BLOCKED, True),
        (ssl.SSLCertVerificationError("certificate verify failed"), FailureKind.TRANSPORT_ERROR, False),
        (ConnectionRefusedError("Connection refused"), FailureKind.TRANSPORT_ERROR, False),
    ],
)
def test_classify_full_taxonomy(exc, kind, should_wait):
    got_kind, message, got_wait = classify_transport_error(exc)

    assert got_kind is kind
    assert got_wait is should_wait
    assert message


def test_classify_passes_provider_message_through():
    kind, message, _ = classify_transport_error(aiosmtplib.SMTPDataError(554, "5.6.0 Bad message"))

    assert kind is FailureKind.TRANSPORT_ERROR
    assert message == "554 5.6.0 Bad message"


def test_classify_reduced_taxonomy_only_keeps_quota():
    blocked = aiosmtplib.SMTPDataError(550, "suspicious activity detected")
    quota = aiosmtplib.SMTPDataError(550, "Daily user sending limit exceeded")

    assert classify_transport_error(blocked, full_taxonomy=False)[0] is FailureKind.TRANSPORT_ERROR
    kind, message, should_wait = classify_transport_error(quota, full_taxonomy=False)
    assert kind is FailureKind.QUOTA_EXCEEDED
    assert message == QUOTA_MESSAGE
    assert should_wait is True
    assert classify_transport_error(blocked)[1] == BLOCKED_MESSAGE


def test_stop_sending_when_idle_returns_false(service):
    assert service.stop_sending() is False
    assert service.metrics.registry.get_sample_value("gmr_cancel_requests_total") == 0.0
    assert_gate_free(service)


@pytest.mark.asyncio
async def test_status_projections_follow_gate(service):
    await service.send(make_request())
    service.gate.try_acquire()
    service.stop_sending()

    status = service.status()
    assert status["status"] == "online"
    assert status["port"] == 3001
    assert status["emails"] == {"today": 1, "total": 1}
    assert status["uptime"] >= 0
    assert status["startTime"].endswith("Z")
    assert isinstance(status["memory"]["usage"], float)

    assert service.sending_status() == {"is_sending": True, "stop_requested": True, "email_count": 1}
    health = service.health()
    assert health["status"] == "healthy"
    assert health["service"] == "Email Server"
    assert health["is_sending"] is True

    info = service.api_info()
    assert info["version"] == "1.0.0"
    assert "POST /send-gmail" in info["endpoints"]


def test_classify_lists_refused_recipients():
    exc = aiosmtplib.SMTPRecipientsRefused(
        [aiosmtplib.SMTPRecipientRefused(550, "5.1.1 No such user", "ghost@example.com")]
    )

    kind, _, _ = classify_transport_error(exc)
    assert kind is FailureKind.ENVELOPE_REJECTED

    kind, message, _ = classify_transport_error(exc, full_taxonomy=False)
    assert kind is FailureKind.TRANSPORT_ERROR
    assert message == "ghost@example.com: 550 5.1.1 No such user"


def test_classify_certificate_failure_reported_by_connect():
    exc = aiosmtplib.SMTPConnectError(
        "Error connecting to smtp.gmail.com on port 465: [SSL: CERTIFICATE_VERIFY_FAILED] certificate verify failed"
    )

    kind, message, should_wait = classify_transport_error(exc)

    assert kind is FailureKind.TRANSPORT_ERROR
    assert "simplified" in message
    assert should_wait is False


def test_memory_usage_is_reported(service, monkeypatch):
    assert service.status()["memory"]["usage"] > 0

    monkeypatch.setattr("gmail_relay.core.sys.platform", "win32")
    assert service.status()["memory"]["usage"] == 0.0
