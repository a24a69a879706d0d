"""
Email notifications via the SendGrid v3 REST API.

Best effort: a missing API key, a missing recipient or a failed send only
means no email goes out. notify() never raises.
"""

import html
import logging
from enum import Enum
from typing import Optional, Union

import httpx

from .config import Settings
from .pipeline.models import Upload, User, Video

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    EXTRACTION_COMPLETE = "extraction_complete"
    GENERATION_COMPLETE = "generation_complete"


_WRAPPER = (
    '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; '
    'padding: 20px; border: 1px solid #e0e0e0; border-radius: 8px;">{body}</div>'
)
_BUTTON = (
    '<div style="text-align: center; margin: 24px 0;">'
    '<a href="{href}" style="background-color: #6366f1; color: white; padding: 12px 24px; '
    'text-decoration: none; border-radius: 4px; font-weight: bold;">{label}</a></div>'
)


class EmailNotifier:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._api_key = settings.sendgrid_api_key
        self._api_base = settings.sendgrid_api_base.rstrip("/")
        self._from_email = settings.sendgrid_from_email
        self._public_url = settings.public_url.rstrip("/")
        self._timeout = settings.provider_timeout_seconds
        self._transport = transport
        if not self._api_key:
            logger.warning("SENDGRID_API_KEY not set, email notifications are disabled")

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def send_email(self, to: str, subject: str, text: str, html_body: str) -> bool:
        if not self.configured:
            return False
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self._from_email},
            "subject": subject,
            "content": [
                {"type": "text/plain", "value": text},
                {"type": "text/html", "value": html_body},
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self._api_base}/mail/send",
                    json=payload,
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"SendGrid email error ({subject!r} to {to}): {e}")
            return False
        logger.info(f"Email sent to {to}: {subject}")
        return True

    # ── Templates ────────────────────────────────────────────────────────

    def _extraction_email(self, upload: Upload) -> tuple[str, str, str]:
        subject = "Your Face Extraction is Complete!"
        link = f"{self._public_url}/interact"
        completed = upload.created_at.strftime("%Y-%m-%d %H:%M UTC")
        text = (
            "Great news! VOTA has successfully extracted your face from the uploaded video.\n"
            "You can now create personalized AI videos featuring yourself.\n\n"
            f"Upload ID: {upload.id}\n\n"
            f"Create your first video: {link}\n\n"
            "Best,\nThe VOTA Team"
        )
        body = (
            '<h1 style="color: #6366f1; text-align: center;">Face Extraction Complete!</h1>'
            "<p>Great news! VOTA has successfully extracted your face from the uploaded video.</p>"
            "<p>You can now create personalized AI videos featuring yourself.</p>"
            f'<p style="font-weight: bold;">Upload ID: {upload.id}</p>'
            f"<p>Uploaded on: {completed}</p>"
            + _BUTTON.format(href=html.escape(link), label="Create Your First Video")
            + "<p>Best,<br>The VOTA Team</p>"
        )
        return subject, text, _WRAPPER.format(body=body)

    def _generation_email(self, video: Video) -> tuple[str, str, str]:
        subject = "Your AI Video is Ready!"
        link = f"{self._public_url}/videos/{video.id}"
        text = (
            "Great news! Your VOTA AI video is now ready to view.\n\n"
            f"Video: {video.title}\n"
            f'Prompt: "{video.prompt}"\n\n'
            f"Watch it here: {link}\n\n"
            "Best,\nThe VOTA Team"
        )
        prompt = (
            f'<p style="font-style: italic;">"{html.escape(video.prompt)}"</p>' if video.prompt else ""
        )
        body = (
            '<h1 style="color: #6366f1; text-align: center;">Your AI Video is Ready!</h1>'
            "<p>Great news! Your VOTA AI video is now ready to view.</p>"
            f'<p style="font-weight: bold;">Video: {html.escape(video.title)}</p>'
            + prompt
            + _BUTTON.format(href=html.escape(link), label="Watch Your Video")
            + "<p>Best,<br>The VOTA Team</p>"
        )
        return subject, text, _WRAPPER.format(body=body)

    # ── Dispatch ─────────────────────────────────────────────────────────

    async def notify(
        self, event: NotificationEvent, user: User, payload: Union[Upload, Video]
    ) -> bool:
        """Send the email for `event`. Returns False when nothing was sent."""
        if not self.configured:
            return False

        recipient = None
        if isinstance(payload, Video):
            recipient = payload.notification_email
        recipient = recipient or user.email
        if not recipient:
            logger.info(f"No email address for user {user.id}, skipping {event.value} notification")
            return False

        try:
            if event == NotificationEvent.EXTRACTION_COMPLETE:
                subject, text, html_body = self._extraction_email(payload)
            else:
                subject, text, html_body = self._generation_email(payload)
        except Exception as e:
            logger.error(f"Failed to render {event.value} email for user {user.id}: {e}", exc_info=True)
            return False

        return await self.send_email(recipient, subject, text, html_body)
