"""
Fallback email invitations.

Used when Trustpilot rejects an invitation or stays unreachable after
retries. This is a best-effort channel: send failures are logged and
returned, never raised.
"""
import asyncio
import html
import re
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from app.logging_config import get_logger


log = get_logger(component="email")


@dataclass(frozen=True)
class SMTPConfig:
    host: str
    port: int
    secure: bool
    user: str
    password: str
    from_email: str
    from_name: str
    timeout: float = 10.0

    @property
    def configured(self) -> bool:
        return bool(self.user and self.password)


@dataclass(frozen=True)
class ReviewEmail:
    customer_email: str
    customer_name: str
    agent_name: str
    conversation_id: str
    business_name: str
    review_link: str


@dataclass(frozen=True)
class FallbackResult:
    success: bool
    message_id: str | None = None
    error: str | None = None

    def to_log(self) -> dict:
        return {"success": self.success, "message_id": self.message_id, "error": self.error}


def build_review_link(review_host: str, domain: str | None, business_name: str) -> str:
    """Trustpilot evaluate link for the business domain (or a name slug)."""
    target = (domain or "").strip()
    if not target:
        target = re.sub(r"[^a-z0-9]+", "-", business_name.lower()).strip("-")
    return f"https://{review_host}/evaluate/{target}"


def render_review_email(data: ReviewEmail) -> tuple[str, str, str]:
    """Return (subject, text, html) for a review invitation."""
    subject = f"Thanks for choosing {data.business_name}! Share your experience"

    text = "\n".join([
        f"Hi {data.customer_name},",
        "",
        f"Thank you for your recent interaction with our team. {data.agent_name} was delighted to assist you!",
        "",
        f"Your experience matters to us, and we'd love to hear about your journey with {data.business_name}.",
        "",
        "Would you mind taking 2 minutes to share your experience? Your honest review helps us "
        "improve and helps other customers discover our services.",
        "",
        f"Write your review here: {data.review_link}",
        "",
        f"Thanks again for choosing {data.business_name}!",
        "",
        f"Conversation ID: {data.conversation_id}",
    ])

    e = {key: html.escape(value) for key, value in data.__dict__.items()}
    body = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Review Request</title>
</head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333; background-color: #f8f9fa;">
  <div style="max-width: 600px; margin: 20px auto; background: #fff; border-radius: 12px; overflow: hidden;">
    <div style="background: #00b494; color: #fff; text-align: center; padding: 30px 20px;">
      <h1 style="margin: 0; font-size: 24px;">Thanks for choosing {e['business_name']}!</h1>
      <p>Your feedback means everything to us</p>
    </div>
    <div style="padding: 30px;">
      <p>Hi {e['customer_name']},</p>
      <p>Thank you for your recent interaction with our team. {e['agent_name']} was delighted to assist you!</p>
      <div style="background: #f1f3f4; border-left: 4px solid #00d4aa; padding: 15px; margin: 20px 0;">
        <strong>From your support agent {e['agent_name']}:</strong><br>
        "It was my pleasure helping you today. Your experience matters to us, and we'd love to hear
        about your journey with {e['business_name']}!"
      </div>
      <p>Would you mind taking 2 minutes to share your experience? Your honest review helps us improve
      and helps other customers discover our services.</p>
      <div style="text-align: center;">
        <a href="{e['review_link']}" target="_blank"
           style="display: inline-block; background: #00d4aa; color: #fff; text-decoration: none;
                  padding: 16px 32px; border-radius: 8px; font-weight: 600;">
          Write Your Review on Trustpilot
        </a>
      </div>
    </div>
    <div style="text-align: center; color: #666; font-size: 14px; padding: 20px; background: #f8f9fa;">
      <p>This invitation was sent because you recently completed a conversation with our support team.</p>
      <p style="font-size: 12px;">Conversation ID: {e['conversation_id']}</p>
    </div>
  </div>
</body>
</html>"""

    return subject, text, body


class EmailService:
    """SMTP sender for review invitation emails."""

    def __init__(self, config: SMTPConfig, smtp_factory=None):
        self.config = config
        self._smtp_factory = smtp_factory or self._connect

    def _connect(self) -> smtplib.SMTP:
        # SSL for port 465, STARTTLS otherwise
        if self.config.secure or self.config.port == 465:
            return smtplib.SMTP_SSL(self.config.host, self.config.port, timeout=self.config.timeout)
        server = smtplib.SMTP(self.config.host, self.config.port, timeout=self.config.timeout)
        server.starttls()
        return server

    def build_message(self, data: ReviewEmail) -> EmailMessage:
        subject, text, body = render_review_email(data)
        from_email = self.config.from_email or self.config.user

        msg = EmailMessage()
        msg["From"] = formataddr((self.config.from_name, from_email))
        msg["To"] = data.customer_email
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=from_email.partition("@")[2] or None)
        msg.set_content(text)
        msg.add_alternative(body, subtype="html")
        return msg

    def _send_blocking(self, msg: EmailMessage) -> None:
        with self._smtp_factory() as server:
            server.login(self.config.user, self.config.password)
            server.send_message(msg)

    async def send_review_invitation(self, data: ReviewEmail) -> FallbackResult:
        """Send the invitation email. Never raises."""
        if not self.config.configured:
            log.warning("fallback_email_skipped", conversation_id=data.conversation_id, reason="smtp_not_configured")
            return FallbackResult(success=False, error="SMTP not configured")
        if not data.customer_email:
            return FallbackResult(success=False, error="No customer email")

        try:
            msg = self.build_message(data)
            await asyncio.to_thread(self._send_blocking, msg)
        except Exception as e:
            log.error("fallback_email_failed", conversation_id=data.conversation_id, error=str(e))
            return FallbackResult(success=False, error=str(e))

        log.info("fallback_email_sent", conversation_id=data.conversation_id, message_id=msg["Message-ID"])
        return FallbackResult(success=True, message_id=msg["Message-ID"])

    def _check_blocking(self) -> None:
        with self._smtp_factory() as server:
            server.login(self.config.user, self.config.password)
            server.noop()

    async def test_connection(self) -> bool:
        """Connect, authenticate and NOOP against the relay."""
        if not self.config.configured:
            return False
        try:
            await asyncio.to_thread(self._check_blocking)
        except (smtplib.SMTPException, OSError) as e:
            log.warning("smtp_check_failed", error=str(e))
            return False
        return True
