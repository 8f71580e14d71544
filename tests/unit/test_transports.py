"""Mail transport tests."""

import pytest

from nurture.errors import MailDeliveryError
from nurture.persistence.models import SenderConfig
from nurture.transports import InMemoryMailTransport, OutgoingEmail
from nurture.transports.smtp import build_mime, uses_implicit_tls


def _message(**headers) -> OutgoingEmail:
    return OutgoingEmail(
        from_name="Olive Owner",
        from_email="owner@example.com",
        to_email="ada@example.com",
        subject="Welcome",
        html_body="<p>Hello</p>",
        text_body="Hello",
        message_id="<abc@example.com>",
        headers=dict(headers),
    )


def _sender(port: int, security: str) -> SenderConfig:
    return SenderConfig(
        user_id="user-1",
        smtp_host="smtp.example.com",
        smtp_port=port,
        smtp_username="owner@example.com",
        security=security,
    )


def test_implicit_tls_only_for_ssl_on_465():
    assert uses_implicit_tls(_sender(465, "SSL"))
    assert uses_implicit_tls(_sender(465, "ssl"))
    assert not uses_implicit_tls(_sender(587, "SSL"))
    assert not uses_implicit_tls(_sender(465, "TLS"))


def test_build_mime_sets_threading_headers_and_alternatives():
    mime = build_mime(
        _message(**{"In-Reply-To": "<prev@example.com>", "X-Mailer": "Runner"})
    )

    assert mime["From"] == "Olive Owner <owner@example.com>"
    assert mime["To"] == "ada@example.com"
    assert mime["Message-ID"] == "<abc@example.com>"
    assert mime["In-Reply-To"] == "<prev@example.com>"
    assert mime["X-Mailer"] == "Runner"
    assert mime["Date"]
    kinds = [part.get_content_type() for part in mime.iter_parts()]
    assert kinds == ["text/plain", "text/html"]


@pytest.mark.asyncio
async def test_inmemory_transport_collects_outbox():
    transport = InMemoryMailTransport()
    sender = _sender(587, "TLS")

    receipt = await transport.send(sender, _message())

    assert receipt.message_id == "<abc@example.com>"
    assert receipt.accepted == ["ada@example.com"]
    assert transport.outbox[0][0] is sender


@pytest.mark.asyncio
async def test_inmemory_transport_can_simulate_rejection():
    transport = InMemoryMailTransport(fail_with="550 no such user")
    with pytest.raises(MailDeliveryError, match="550"):
        await transport.send(_sender(587, "TLS"), _message())
    assert transport.outbox == []
