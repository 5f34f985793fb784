import smtplib

import httpx
from sqlmodel import Session

from signflow.services.audit import AuditService
from signflow.services.notification import (
    EmailAttachment,
    NotificationService,
    Recipient,
    resolve_completion_recipients,
)
from signflow.services.side_effects import EffectLedger

from .conftest import TEST_APP_URL, FakeSMTP, seed_envelope


def _service(session: Session, **kwargs) -> NotificationService:
    service = NotificationService(AuditService(session), public_app_url=f"{TEST_APP_URL}/", **kwargs)
    service.configure_email(host="smtp.example.com", port=587, sender="noreply@example.com")
    return service


def test_recipients_from_envelope_metadata(db_session: Session, storage) -> None:
    seeded = seed_envelope(
        db_session,
        storage,
        signers=[{"email": "signer@example.com"}],
        metadata={
            "envelope_recipients": [
                {"email": "Owner@Example.com", "name": "Owner", "role": "client"},
                {"email": "owner@example.com", "name": "Duplicate"},
                {"email": "  "},
                "not-a-dict",
                {"email": "pm@example.com", "role": "builder"},
            ]
        },
    )

    recipients = resolve_completion_recipients(seeded.document, seeded.requests)

    assert recipients == [
        Recipient(email="Owner@Example.com", name="Owner", role="client"),
        Recipient(email="pm@example.com", name="", role="builder"),
    ]


def test_recipients_fall_back_to_signers(db_session: Session, storage) -> None:
    seeded = seed_envelope(
        db_session,
        storage,
        signers=[{"email": "a@example.com"}, {"email": "A@example.com"}, {"email": None}, {"email": "b@example.com"}],
    )

    recipients = resolve_completion_recipients(seeded.document, seeded.requests)

    assert [recipient.email for recipient in recipients] == ["a@example.com", "b@example.com"]
    assert {recipient.role for recipient in recipients} == {"signer"}


def test_signing_link_format(db_session: Session) -> None:
    assert _service(db_session).build_signing_link("abc123") == f"{TEST_APP_URL}/d/abc123"


def test_completion_email_carries_attachment(db_session: Session, storage, smtp_outbox) -> None:
    seeded = seed_envelope(db_session, storage, signers=[{"email": "a@example.com"}])
    service = _service(db_session)
    attachment = EmailAttachment(filename="Agreement_executed.pdf", content=b"%PDF-1.4 test")

    results = service.notify_envelope_executed(
        document=seeded.document,
        envelope_id=seeded.envelope.id,
        recipients=[Recipient(email="a@example.com", name="Ann")],
        executed_url=f"{TEST_APP_URL}/esign/executed/token",
        attachment=attachment,
    )

    assert [result.sent for result in results] == [True]
    message = smtp_outbox[0]
    assert message["From"] == "noreply@example.com"
    html = message.get_body(preferencelist=("html",)).get_content()
    assert "Hi Ann," in html
    assert f"{TEST_APP_URL}/esign/executed/token" in html
    (part,) = list(message.iter_attachments())
    assert part.get_filename() == "Agreement_executed.pdf"
    assert part.get_content_type() == "application/pdf"
    assert part.get_content() == b"%PDF-1.4 test"


def test_one_failing_recipient_does_not_block_others(db_session: Session, storage, monkeypatch) -> None:
    seeded = seed_envelope(db_session, storage, signers=[{"email": "a@example.com"}])
    delivered: list = []

    class FlakySMTP(FakeSMTP):
        def send_message(self, message):
            if message["To"] == "broken@example.com":
                raise smtplib.SMTPRecipientsRefused({"broken@example.com": (550, b"mailbox unavailable")})
            delivered.append(message)

    monkeypatch.setattr(smtplib, "SMTP", FlakySMTP)
    service = _service(db_session)
    ledger = EffectLedger(db_session)
    recipients = [Recipient(email="broken@example.com"), Recipient(email="ok@example.com")]

    results = service.notify_envelope_executed(
        document=seeded.document,
        envelope_id=seeded.envelope.id,
        recipients=recipients,
        executed_url=None,
        ledger=ledger,
    )

    assert [(result.recipient, result.sent) for result in results] == [
        ("broken@example.com", False),
        ("ok@example.com", True),
    ]
    assert [message["To"] for message in delivered] == ["ok@example.com"]
    errors = AuditService(db_session).list_events(event_type="notification_error")
    assert [event.details["recipient"] for event in errors] == ["broken@example.com"]
    assert ledger.get(seeded.envelope.id, "completion_email:broken@example.com").status.value == "failed"

    # a second pass only retries the failed recipient
    delivered.clear()
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    retried = service.notify_envelope_executed(
        document=seeded.document,
        envelope_id=seeded.envelope.id,
        recipients=recipients,
        executed_url=None,
        ledger=ledger,
    )
    assert [result.recipient for result in retried] == ["broken@example.com"]


def test_skipped_without_sender(db_session: Session, storage, smtp_outbox) -> None:
    seeded = seed_envelope(db_session, storage, signers=[{"email": "a@example.com"}])
    service = NotificationService(AuditService(db_session), public_app_url=TEST_APP_URL)

    results = service.notify_signature_requests(
        document=seeded.document,
        envelope_id=seeded.envelope.id,
        issued=[(seeded.requests[0], "token")],
    )

    assert results == []
    assert smtp_outbox == []
    skipped = AuditService(db_session).list_events(event_type="notification_skipped")
    assert skipped[0].details["kind"] == "signature_request"


def test_sendgrid_backend_posts_message(db_session: Session, storage, monkeypatch) -> None:
    seeded = seed_envelope(db_session, storage, signers=[{"email": "a@example.com"}])
    posted: list[dict] = []

    def fake_post(url, headers=None, json=None, timeout=None):
        posted.append({"url": url, "headers": headers, "json": json})
        return httpx.Response(202, request=httpx.Request("POST", url))

    monkeypatch.setattr(httpx, "post", fake_post)
    service = NotificationService(AuditService(db_session), public_app_url=TEST_APP_URL)
    service.configure_sendgrid(api_key="SG.test", sender="Signflow <noreply@example.com>")

    results = service.notify_signature_requests(
        document=seeded.document,
        envelope_id=seeded.envelope.id,
        issued=[(seeded.requests[0], "tok-1")],
    )

    assert [result.sent for result in results] == [True]
    payload = posted[0]["json"]
    assert posted[0]["headers"]["Authorization"] == "Bearer SG.test"
    assert payload["from"] == {"email": "noreply@example.com", "name": "Signflow"}
    assert payload["personalizations"] == [{"to": [{"email": "a@example.com"}]}]
    assert f"{TEST_APP_URL}/d/tok-1" in payload["content"][0]["value"]


def test_apply_email_settings_prefers_configured_backend(db_session: Session) -> None:
    class Settings:
        email_backend = "sendgrid"
        smtp_sender = "noreply@example.com"
        sendgrid_api_key = None
        smtp_host = "smtp.example.com"
        smtp_port = 25
        smtp_username = None
        smtp_password = None
        smtp_starttls = False

    service = NotificationService(AuditService(db_session))
    service.apply_email_settings(Settings())

    # no SendGrid key, so SMTP is used instead
    assert service.email_backend == "smtp"
    assert service.email_config.host == "smtp.example.com"
    assert service.email_config.starttls is False
