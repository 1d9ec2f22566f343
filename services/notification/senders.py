"""
services/notification/senders.py
Channel senders: Resend email, WhatsApp Cloud API, Twilio SMS (legacy)
and Facebook Messenger (legacy).

Senders are synchronous and never raise. Every provider call runs through
a per-channel pybreaker circuit breaker; an unconfigured provider runs in
simulation mode (logged, reported as delivered).
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx
import pybreaker
import resend
from twilio.rest import Client as TwilioClient

from config.settings import Settings
from services.notification.messages import OutboundMessage
from shared.models.models import NotificationMethod

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"


@dataclass
class DeliveryResult:
    successful: bool
    failure_reason: Optional[str] = None
    provider_message_id: Optional[str] = None


class ChannelSender:
    """Base sender. Subclasses supply the destination lookup and the provider call."""

    method: NotificationMethod
    destination_label = "destination"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.breaker = pybreaker.CircuitBreaker(
            fail_max=settings.PROVIDER_BREAKER_FAIL_MAX,
            reset_timeout=settings.PROVIDER_BREAKER_RESET_SECONDS,
            name=f"notify-{self.method.value}",
        )

    @property
    def configured(self) -> bool:
        return False

    def destination(self, missionary) -> Optional[str]:
        raise NotImplementedError

    def _send(self, destination: str, message: OutboundMessage) -> Optional[str]:
        """Perform the provider call; returns the provider message id."""
        raise NotImplementedError

    def deliver(self, missionary, message: OutboundMessage) -> DeliveryResult:
        return self.send_to(self.destination(missionary), message)

    def send_to(self, destination: Optional[str], message: OutboundMessage) -> DeliveryResult:
        if not destination:
            return DeliveryResult(False, f"No {self.destination_label} on file")

        if not self.configured:
            logger.info(
                "%s provider not configured, simulating %s to %s",
                self.method.value, message.message_type.value, destination,
            )
            return DeliveryResult(True, provider_message_id="simulated")

        try:
            provider_id = self.breaker.call(self._send, destination, message)
        except pybreaker.CircuitBreakerError:
            logger.warning("%s circuit open, skipping %s", self.method.value, destination)
            return DeliveryResult(False, f"{self.method.value} provider unavailable (circuit open)")
        except Exception as exc:
            logger.warning("%s delivery to %s failed: %s", self.method.value, destination, exc)
            return DeliveryResult(False, str(exc) or exc.__class__.__name__)

        return DeliveryResult(True, provider_message_id=provider_id)


# ── Email (Resend) ────────────────────────────────────────────

class EmailSender(ChannelSender):
    method = NotificationMethod.EMAIL
    destination_label = "email address"

    @property
    def configured(self) -> bool:
        return bool(self.settings.RESEND_API_KEY)

    def destination(self, missionary) -> Optional[str]:
        return missionary.email_address

    def _send(self, destination: str, message: OutboundMessage) -> Optional[str]:
        resend.api_key = self.settings.RESEND_API_KEY
        response = resend.Emails.send({
            "from": f"{self.settings.EMAIL_FROM_NAME} <{self.settings.EMAIL_FROM}>",
            "to": [destination],
            "subject": message.subject,
            "html": message.html or message.text,
            "text": message.text,
        })
        return response.get("id") if isinstance(response, dict) else getattr(response, "id", None)


# ── WhatsApp (Cloud API) ──────────────────────────────────────

class WhatsAppSender(ChannelSender):
    method = NotificationMethod.WHATSAPP
    destination_label = "WhatsApp number"

    @property
    def configured(self) -> bool:
        return bool(self.settings.WHATSAPP_ACCESS_TOKEN and self.settings.WHATSAPP_PHONE_NUMBER_ID)

    def destination(self, missionary) -> Optional[str]:
        return missionary.whatsapp_number or missionary.phone_number

    def _send(self, destination: str, message: OutboundMessage) -> Optional[str]:
        url = (
            f"{GRAPH_API_BASE}/{self.settings.WHATSAPP_API_VERSION}/"
            f"{self.settings.WHATSAPP_PHONE_NUMBER_ID}/messages"
        )
        response = httpx.post(
            url,
            headers={"Authorization": f"Bearer {self.settings.WHATSAPP_ACCESS_TOKEN}"},
            json={
                "messaging_product": "whatsapp",
                "to": re.sub(r"\D", "", destination),
                "type": "text",
                "text": {"body": message.text},
            },
            timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        messages = response.json().get("messages") or [{}]
        return messages[0].get("id")


# ── SMS (Twilio, legacy) ──────────────────────────────────────

class SmsSender(ChannelSender):
    method = NotificationMethod.TEXT
    destination_label = "phone number"

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self._client: Optional[TwilioClient] = None

    @property
    def configured(self) -> bool:
        s = self.settings
        return bool(s.TWILIO_ACCOUNT_SID and s.TWILIO_AUTH_TOKEN and s.TWILIO_FROM_NUMBER)

    def destination(self, missionary) -> Optional[str]:
        return missionary.phone_number

    def _send(self, destination: str, message: OutboundMessage) -> Optional[str]:
        if self._client is None:
            self._client = TwilioClient(self.settings.TWILIO_ACCOUNT_SID, self.settings.TWILIO_AUTH_TOKEN)
        sms = self._client.messages.create(
            body=message.text,
            from_=self.settings.TWILIO_FROM_NUMBER,
            to=destination,
        )
        return sms.sid


# ── Messenger (legacy) ────────────────────────────────────────

class MessengerSender(ChannelSender):
    method = NotificationMethod.MESSENGER
    destination_label = "Messenger account"

    @property
    def configured(self) -> bool:
        return bool(self.settings.MESSENGER_PAGE_ACCESS_TOKEN)

    def destination(self, missionary) -> Optional[str]:
        return missionary.messenger_account

    def _send(self, destination: str, message: OutboundMessage) -> Optional[str]:
        response = httpx.post(
            f"{GRAPH_API_BASE}/{self.settings.MESSENGER_API_VERSION}/me/messages",
            params={"access_token": self.settings.MESSENGER_PAGE_ACCESS_TOKEN},
            json={
                "recipient": {"id": destination},
                "message": {"text": message.text},
                "messaging_type": "MESSAGE_TAG",
                "tag": "CONFIRMED_EVENT_UPDATE",
            },
            timeout=self.settings.PROVIDER_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        return response.json().get("message_id")


def build_senders(settings: Settings) -> dict:
    return {
        NotificationMethod.EMAIL: EmailSender(settings),
        NotificationMethod.WHATSAPP: WhatsAppSender(settings),
        NotificationMethod.TEXT: SmsSender(settings),
        NotificationMethod.MESSENGER: MessengerSender(settings),
    }
