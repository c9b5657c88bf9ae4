from __future__ import annotations
import asyncio
import os
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Sequence

import structlog
from jinja2 import Environment, DictLoader, select_autoescape

from .config import EVENT_NAME, NOTIFIER, _bool_env
from .helpers import now_ts, to_local_display
from .qr import ticket_attachment

logger = structlog.get_logger(__name__)


@dataclass
class SendResult:
    sent: bool
    reason: Optional[str] = None


# ----------------------------
# Templates
# ----------------------------
TEMPLATES = {
    "ticket.html": """
<h2>{{ event_name }}: your e-ticket</h2>
<p>Hi {{ name }}, your payment is confirmed.</p>
<table>
{% for seat in seats %}
  <tr>
    <td>{{ seat.name }}</td>
    <td><b>{{ seat.ticketNumber }}</b></td>
  </tr>
{% endfor %}
</table>
<p>Show the attached QR code{{ "s" if seats|length > 1 }} at the gate.
Each ticket admits one person once per event day.</p>
""",
    "ticket.txt": """{{ event_name }}: your e-ticket

Hi {{ name }}, your payment is confirmed.
{% for seat in seats %}
  {{ seat.name }}: {{ seat.ticketNumber }}
{% endfor %}
Show the attached QR code at the gate.
""",
    "rejected.html": """
<h2>{{ event_name }}: payment not verified</h2>
<p>Hi {{ name }}, we could not verify your payment.</p>
<p>Reason: {{ reason }}</p>
<p>You can submit a new payment proof from your registration page.</p>
""",
    "rejected.txt": """{{ event_name }}: payment not verified

Hi {{ name }}, we could not verify your payment.
Reason: {{ reason }}
You can submit a new payment proof from your registration page.
""",
    "otp.html": """
<h2>{{ event_name }}: friend invitation code</h2>
<p>Your verification code is <b>{{ code }}</b>.</p>
<p>It expires at {{ expires }}.</p>
""",
    "otp.txt": """{{ event_name }}: friend invitation code

Your verification code is {{ code }}.
It expires at {{ expires }}.
""",
    "bulk.html": """
<h2>{{ event_name }}</h2>
<p>Hi {{ name }},</p>
{% for para in paragraphs %}
<p>{{ para }}</p>
{% endfor %}
""",
    "bulk.txt": """{{ event_name }}

Hi {{ name }},

{{ message }}
""",
}

env = Environment(loader=DictLoader(TEMPLATES),
                  autoescape=select_autoescape(["html"]))


def render(template: str, **ctx: Any) -> tuple[str, str]:
    ctx.setdefault("event_name", EVENT_NAME)
    html = env.get_template(f"{template}.html").render(**ctx)
    text = env.get_template(f"{template}.txt").render(**ctx)
    return html, text


# ----------------------------
# Senders
# ----------------------------
class Notifier:
    async def send(
        self, to: str, subject: str, html: str, text: str,
        attachments: Sequence[Dict[str, Any]] = (),
    ) -> SendResult:
        raise NotImplementedError

    async def send_ticket(self, to: str, name: str,
                          seats: List[Dict[str, Any]]) -> SendResult:
        html, text = render("ticket", name=name, seats=seats)
        attachments = [ticket_attachment(s) for s in seats]
        return await self.send(to, f"{EVENT_NAME} e-ticket", html, text,
                               attachments)

    async def send_rejection(self, to: str, name: str,
                             reason: str) -> SendResult:
        html, text = render("rejected", name=name, reason=reason)
        return await self.send(to, f"{EVENT_NAME} payment not verified",
                               html, text)

    async def send_otp(self, to: str, code: str,
                       expires_at: float) -> SendResult:
        html, text = render("otp", code=code,
                            expires=to_local_display(expires_at))
        return await self.send(to, f"{EVENT_NAME} verification code",
                               html, text)

    async def send_bulk(self, to: str, name: str, subject: str,
                        message: str) -> SendResult:
        paragraphs = [p.strip() for p in message.split("\n\n") if p.strip()]
        html, text = render("bulk", name=name, message=message,
                            paragraphs=paragraphs)
        return await self.send(to, subject, html, text)


@dataclass
class OutboxNotifier(Notifier):
    """Keeps every message in memory. ``fail_with`` makes sends fail."""
    messages: List[Dict[str, Any]] = field(default_factory=list)
    fail_with: Optional[str] = None

    async def send(self, to, subject, html, text, attachments=()):
        if self.fail_with:
            return SendResult(sent=False, reason=self.fail_with)
        self.messages.append({
            "to": to,
            "subject": subject,
            "html": html,
            "text": text,
            "attachments": list(attachments),
            "sent_at": now_ts(),
        })
        return SendResult(sent=True)

    def to(self, address: str) -> List[Dict[str, Any]]:
        return [m for m in self.messages if m["to"] == address]


@dataclass
class SMTPConfig:
    host: str
    port: int
    user: Optional[str]
    password: Optional[str]
    use_tls: bool
    use_ssl: bool
    sender: str


def _load_smtp(prefix: str) -> Optional[SMTPConfig]:
    host = os.environ.get(f"{prefix}_HOST")
    port_raw = os.environ.get(f"{prefix}_PORT")
    sender = os.environ.get(f"{prefix}_FROM")
    if not host or not port_raw or not sender:
        return None

    try:
        port = int(port_raw)
    except ValueError:
        raise RuntimeError(f"Invalid {prefix}_PORT: {port_raw}")

    return SMTPConfig(
        host=host,
        port=port,
        user=os.environ.get(f"{prefix}_USER"),
        password=os.environ.get(f"{prefix}_PASS"),
        use_tls=_bool_env(f"{prefix}_TLS", default=True),
        use_ssl=_bool_env(f"{prefix}_SSL", default=False),
        sender=sender,
    )


def _build_message(sender: str, to: str, subject: str, html: str, text: str,
                   attachments: Sequence[Dict[str, Any]]) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message.set_content(text)
    message.add_alternative(html, subtype="html")
    for a in attachments:
        message.add_attachment(
            a["content"], maintype=a["maintype"], subtype=a["subtype"],
            filename=a["filename"],
        )
    return message


def _send_via_config(config: SMTPConfig, message: EmailMessage) -> None:
    if config.use_ssl:
        context = ssl.create_default_context()
        with smtplib.SMTP_SSL(config.host, config.port, context=context,
                              timeout=20) as server:
            if config.user and config.password:
                server.login(config.user, config.password)
            server.send_message(message)
        return

    with smtplib.SMTP(config.host, config.port, timeout=20) as server:
        server.ehlo()
        if config.use_tls:
            context = ssl.create_default_context()
            server.starttls(context=context)
            server.ehlo()
        if config.user and config.password:
            server.login(config.user, config.password)
        server.send_message(message)


class SMTPNotifier(Notifier):
    def __init__(self, primary: Optional[SMTPConfig] = None,
                 secondary: Optional[SMTPConfig] = None) -> None:
        self.primary = primary or _load_smtp("SMTP_PRIMARY")
        self.secondary = secondary or _load_smtp("SMTP_SECONDARY")

    def _deliver(self, to, subject, html, text, attachments) -> SendResult:
        if not self.primary:
            return SendResult(False, "SMTP_PRIMARY configuration missing")

        try:
            _send_via_config(self.primary, _build_message(
                self.primary.sender, to, subject, html, text, attachments))
            return SendResult(True)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("smtp_primary_failed", to=to, error=str(exc))

        if not self.secondary:
            return SendResult(
                False, "primary SMTP failed and no secondary configured"
            )
        try:
            _send_via_config(self.secondary, _build_message(
                self.secondary.sender, to, subject, html, text, attachments))
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("smtp_secondary_failed", to=to, error=str(exc))
            return SendResult(False, f"both SMTP servers failed: {exc}")
        logger.info("email_sent_via_secondary", to=to)
        return SendResult(True)

    async def send(self, to, subject, html, text, attachments=()):
        # smtplib blocks; keep it off the event loop
        return await asyncio.to_thread(
            self._deliver, to, subject, html, text, list(attachments)
        )


def make_notifier(name: str = NOTIFIER) -> Notifier:
    if name == "outbox":
        return OutboxNotifier()
    return SMTPNotifier()
