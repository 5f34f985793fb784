from __future__ import annotations

import base64
import logging
import smtplib
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import parseaddr
from pathlib import Path
from typing import Iterable, Optional, Sequence
from uuid import UUID

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from signflow.models.document import Document, document_metadata
from signflow.models.envelope import SigningRequest
from signflow.services.audit import AuditService
from signflow.services.side_effects import EffectLedger

logger = logging.getLogger("signflow.notifications")


@dataclass
class EmailConfig:
    host: str
    port: int
    username: str | None
    password: str | None
    sender: str
    starttls: bool


@dataclass
class SendGridConfig:
    api_key: str
    sender: str | None


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    mime_type: str = "application/pdf"


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str = ""
    role: str = ""


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html_body: str
    text_body: str | None = None
    attachments: list[EmailAttachment] = field(default_factory=list)


@dataclass(frozen=True)
class DeliveryResult:
    recipient: str
    sent: bool
    error: str | None = None


def resolve_completion_recipients(document: Document, requests: Iterable[SigningRequest]) -> list[Recipient]:
    """Recipients from the document's envelope metadata, else the signers' addresses.

    Addresses are deduplicated case-insensitively, first occurrence wins.
    """
    raw = document_metadata(document).get("envelope_recipients")
    candidates: list[Recipient] = []
    if isinstance(raw, list):
        for item in raw:
            if not isinstance(item, dict):
                continue
            email = str(item.get("email") or "").strip()
            if email:
                candidates.append(
                    Recipient(
                        email=email,
                        name=str(item.get("name") or "").strip(),
                        role=str(item.get("role") or "").strip(),
                    )
                )
    if not candidates:
        candidates = [
            Recipient(email=request.sent_to_email.strip(), role="signer")
            for request in requests
            if request.sent_to_email and request.sent_to_email.strip()
        ]

    unique: list[Recipient] = []
    seen: set[str] = set()
    for recipient in candidates:
        key = recipient.email.lower()
        if key not in seen:
            seen.add(key)
            unique.append(recipient)
    return unique


class NotificationService:
    def __init__(
        self,
        audit_service: Optional[AuditService] = None,
        email_config: Optional[EmailConfig] = None,
        public_app_url: str | None = None,
        template_root: Path | None = None,
        sendgrid_config: Optional[SendGridConfig] = None,
        email_backend: str = "smtp",
        max_workers: int = 8,
    ) -> None:
        self.audit_service = audit_service
        self.email_config = email_config
        self.sendgrid_config = sendgrid_config
        normalized_backend = (email_backend or "smtp").strip().lower()
        self.email_backend = normalized_backend if normalized_backend in {"smtp", "sendgrid"} else "smtp"
        if self.sendgrid_config and self.email_backend != "sendgrid":
            self.email_backend = "sendgrid"
        self.public_app_url = public_app_url
        self.max_workers = max(int(max_workers or 1), 1)
        self.template_root = template_root or Path(__file__).resolve().parent.parent / "templates"
        self.template_env = Environment(
            loader=FileSystemLoader(self.template_root),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def configure_public_app_url(self, base_url: str | None) -> None:
        self.public_app_url = base_url

    def apply_email_settings(self, settings) -> None:
        preferred = (getattr(settings, "email_backend", "smtp") or "smtp").strip().lower()
        sender = getattr(settings, "smtp_sender", None)
        sendgrid_key = getattr(settings, "sendgrid_api_key", None)
        smtp_host = getattr(settings, "smtp_host", None)
        smtp_port = getattr(settings, "smtp_port", None)

        def use_sendgrid() -> bool:
            if sendgrid_key and sender:
                self.configure_sendgrid(api_key=sendgrid_key, sender=sender)
                return True
            return False

        def use_smtp() -> bool:
            if smtp_host and sender and smtp_port:
                self.configure_email(
                    host=smtp_host,
                    port=int(smtp_port),
                    sender=sender,
                    username=getattr(settings, "smtp_username", None),
                    password=getattr(settings, "smtp_password", None),
                    starttls=bool(getattr(settings, "smtp_starttls", True)),
                )
                return True
            return False

        if preferred == "sendgrid":
            if not use_sendgrid():
                use_smtp()
            return
        if not use_smtp():
            use_sendgrid()

    def configure_email(
        self,
        host: str,
        port: int,
        sender: str,
        username: str | None = None,
        password: str | None = None,
        starttls: bool = True,
    ) -> None:
        self.email_config = EmailConfig(
            host=host,
            port=port,
            username=username,
            password=password,
            sender=sender,
            starttls=starttls,
        )
        self.email_backend = "smtp"

    def configure_sendgrid(self, *, api_key: str, sender: str | None = None) -> None:
        self.sendgrid_config = SendGridConfig(api_key=api_key, sender=sender)
        self.email_backend = "sendgrid"

    def _record_event(
        self,
        *,
        event_type: str,
        document: Document | None,
        envelope_id: UUID | None = None,
        extra: dict | None = None,
    ) -> None:
        if not self.audit_service:
            return
        details: dict[str, object | None] = {"channel": "email"}
        if extra:
            details.update(extra)
        self.audit_service.record_event(
            event_type=event_type,
            org_id=document.org_id if document else None,
            document_id=document.id if document else None,
            envelope_id=envelope_id,
            details=details,
        )

    def _email_sender_available(self) -> bool:
        if self.email_backend == "sendgrid":
            return self.sendgrid_config is not None
        return self.email_config is not None

    def build_signing_link(self, token: str) -> str:
        base = (self.public_app_url or "").rstrip("/")
        return f"{base}/d/{token}"

    def _render_template(self, template_name: str, context: dict) -> str:
        template = self.template_env.get_template(template_name)
        return template.render(**context)

    def send_parallel(self, messages: Sequence[OutgoingEmail]) -> list[DeliveryResult]:
        """Send every message on the worker pool; one failure never affects another."""
        if not messages:
            return []

        def deliver(message: OutgoingEmail) -> DeliveryResult:
            try:
                self._send_email(
                    to=message.to,
                    subject=message.subject,
                    html_body=message.html_body,
                    text_body=message.text_body,
                    attachments=message.attachments,
                )
            except Exception as exc:
                logger.warning("E-mail to %s failed: %s", message.to, exc)
                return DeliveryResult(recipient=message.to, sent=False, error=str(exc))
            return DeliveryResult(recipient=message.to, sent=True)

        workers = min(self.max_workers, len(messages))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="signflow-mail") as pool:
            return list(pool.map(deliver, messages))

    def notify_signature_requests(
        self,
        *,
        document: Document,
        envelope_id: UUID,
        issued: Sequence[tuple[SigningRequest, str]],
    ) -> list[DeliveryResult]:
        """E-mail a signing link to each (request, raw token) pair of the next batch."""
        if not issued:
            return []
        if not self._email_sender_available():
            self._record_event(
                event_type="notification_skipped",
                document=document,
                envelope_id=envelope_id,
                extra={"reason": "email sender not configured", "kind": "signature_request"},
            )
            return []

        messages: list[OutgoingEmail] = []
        for request, token in issued:
            url = self.build_signing_link(token)
            html_body = self._render_template(
                "email/signature_request.html",
                {"document_title": document.title, "signing_url": url, "expires_at": request.expires_at},
            )
            messages.append(
                OutgoingEmail(
                    to=request.sent_to_email or "",
                    subject=f"Signature requested: {document.title}",
                    html_body=html_body,
                    text_body=f"The document {document.title} is now ready for your signature.\n{url}\n",
                )
            )
            self._record_event(
                event_type="notification_attempt",
                document=document,
                envelope_id=envelope_id,
                extra={"recipient": request.sent_to_email, "request_id": str(request.id)},
            )

        results = self.send_parallel(messages)
        for result in results:
            self._record_delivery(document, envelope_id, result)
        return results

    def notify_envelope_executed(
        self,
        *,
        document: Document,
        envelope_id: UUID,
        recipients: Sequence[Recipient],
        executed_url: str | None,
        attachment: EmailAttachment | None = None,
        ledger: EffectLedger | None = None,
    ) -> list[DeliveryResult]:
        """One completion e-mail per recipient, each guarded by its own ledger entry."""
        if not recipients:
            return []
        if not self._email_sender_available():
            self._record_event(
                event_type="notification_skipped",
                document=document,
                envelope_id=envelope_id,
                extra={"reason": "email sender not configured", "kind": "envelope_executed"},
            )
            return []

        reserved = []
        for recipient in recipients:
            effect = None
            if ledger is not None:
                effect = ledger.begin(document.org_id, envelope_id, f"completion_email:{recipient.email.lower()}")
                if effect is None:
                    continue
            reserved.append((recipient, effect))

        messages: list[OutgoingEmail] = []
        for recipient, _ in reserved:
            html_body = self._render_template(
                "email/envelope_executed.html",
                {
                    "recipient_name": recipient.name,
                    "document_title": document.title,
                    "executed_url": executed_url,
                    "has_attachment": attachment is not None,
                },
            )
            messages.append(
                OutgoingEmail(
                    to=recipient.email,
                    subject=f"Document executed: {document.title}",
                    html_body=html_body,
                    text_body=f"{document.title} has been fully executed.\n{executed_url or ''}\n",
                    attachments=[attachment] if attachment else [],
                )
            )
            self._record_event(
                event_type="notification_attempt",
                document=document,
                envelope_id=envelope_id,
                extra={"recipient": recipient.email, "kind": "envelope_executed"},
            )

        results = self.send_parallel(messages)
        for (_, effect), result in zip(reserved, results):
            self._record_delivery(document, envelope_id, result)
            if ledger is not None and effect is not None:
                if result.sent:
                    ledger.complete(effect)
                else:
                    ledger.fail(effect, RuntimeError(result.error or "send failed"))
        return results

    def _record_delivery(self, document: Document, envelope_id: UUID, result: DeliveryResult) -> None:
        if result.sent:
            self._record_event(
                event_type="notification_sent",
                document=document,
                envelope_id=envelope_id,
                extra={"recipient": result.recipient},
            )
        else:
            self._record_event(
                event_type="notification_error",
                document=document,
                envelope_id=envelope_id,
                extra={"recipient": result.recipient, "reason": result.error},
            )

    def _send_email(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        text_body: str | None = None,
        attachments: Sequence[EmailAttachment] | None = None,
    ) -> None:
        if self.email_backend == "sendgrid":
            if not self.sendgrid_config:
                raise RuntimeError("SendGrid sender not configured")
            self._send_email_via_sendgrid(
                to=to,
                subject=subject,
                html_body=html_body,
                text_body=text_body,
                attachments=list(attachments or []),
            )
            return

        if not self.email_config:
            raise RuntimeError("Email sender not configured")

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.email_config.sender
        message["To"] = to
        message.set_content(text_body or "", subtype="plain", charset="utf-8")
        message.add_alternative(html_body, subtype="html", charset="utf-8")

        for attachment in attachments or []:
            maintype = "application"
            subtype = "octet-stream"
            if attachment.mime_type and "/" in attachment.mime_type:
                maintype, subtype = attachment.mime_type.split("/", 1)
            message.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype,
                filename=attachment.filename,
            )

        with smtplib.SMTP(self.email_config.host, self.email_config.port, timeout=30) as smtp:
            if self.email_config.starttls:
                smtp.starttls()
            if self.email_config.username and self.email_config.password:
                smtp.login(self.email_config.username, self.email_config.password)
            smtp.send_message(message)

    def _send_email_via_sendgrid(
        self,
        *,
        to: str,
        subject: str,
        html_body: str,
        text_body: str | None,
        attachments: Sequence[EmailAttachment],
    ) -> None:
        if not self.sendgrid_config:
            raise RuntimeError("SendGrid sender not configured")

        sender = self.sendgrid_config.sender or (self.email_config.sender if self.email_config else None)
        if not sender:
            raise RuntimeError("SendGrid sender address missing")
        name, email = parseaddr(sender)
        if not email:
            raise RuntimeError("SendGrid sender address invalid")

        contents: list[dict[str, str]] = []
        if text_body:
            contents.append({"type": "text/plain", "value": text_body})
        contents.append({"type": "text/html", "value": html_body})

        sender_block: dict[str, str] = {"email": email}
        if name:
            sender_block["name"] = name
        payload: dict[str, object] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": sender_block,
            "subject": subject,
            "content": contents,
        }
        if attachments:
            payload["attachments"] = [
                {
                    "content": base64.b64encode(item.content).decode("ascii"),
                    "type": item.mime_type or "application/octet-stream",
                    "filename": item.filename,
                    "disposition": "attachment",
                }
                for item in attachments
            ]

        response = httpx.post(
            "https://api.sendgrid.com/v3/mail/send",
            headers={
                "Authorization": f"Bearer {self.sendgrid_config.api_key}",
                "Content-Type": "application/json",
            },
            json=payload,
            timeout=30,
        )
        response.raise_for_status()
