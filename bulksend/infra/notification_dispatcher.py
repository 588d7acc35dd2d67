# bulksend/infra/notification_dispatcher.py
"""
Notification dispatcher: one message to one guest.

Picks WhatsApp or SMS for the job's channel, renders the
per-message-type text (Hebrew by default, English for events with
locale "en") or fills the approved WhatsApp template, and turns the
provider's classified errors into a ChannelResult.  Unexpected
exceptions are left to the dispatch executor.
"""
from __future__ import annotations

from bulksend.config import settings
from bulksend.core.bulk.domain import ChannelResult, DeliveryChannel, Event, MessageType, Recipient
from bulksend.infra.logging_config import get_logger
from bulksend.transport import meta_sender, twilio_sender
from bulksend.transport.meta_sender import MetaSendError
from bulksend.transport.twilio_sender import TwilioSendError

logger = get_logger(__name__)

TEMPLATES: dict[str, dict[MessageType, str]] = {
    "he": {
        MessageType.INVITE: (
            "שלום {guest_name}!\n\nאתם מוזמנים ל{event_title}!\n\n"
            "נשמח מאוד אם תאשרו את הגעתכם בקישור הבא:\n{rsvp_link}\n\nמחכים לראותכם!"
        ),
        MessageType.REMINDER: (
            "שלום {guest_name}!\n\nרצינו להזכיר לכם לאשר את הגעתכם ל{event_title}.\n\n"
            "לאישור הגעה:\n{rsvp_link}\n\nתודה!"
        ),
        MessageType.EVENT_DAY: (
            "שלום {guest_name}!\n\nהיום זה קורה! {event_title}\n\n"
            "תאריך: {event_date}\nמיקום: {event_location}\n\nנתראה!"
        ),
        MessageType.THANK_YOU: (
            "שלום {guest_name}!\n\nתודה רבה שחגגתם איתנו ב{event_title}.\n\nשמחנו לראותכם!"
        ),
    },
    "en": {
        MessageType.INVITE: (
            "Hello {guest_name}!\n\nYou are invited to {event_title}!\n\n"
            "Please confirm your attendance using the link below:\n{rsvp_link}\n\n"
            "We look forward to seeing you!"
        ),
        MessageType.REMINDER: (
            "Hello {guest_name}!\n\nThis is a reminder to confirm your attendance at {event_title}.\n\n"
            "Please RSVP here:\n{rsvp_link}\n\nThank you!"
        ),
        MessageType.EVENT_DAY: (
            "Hello {guest_name}!\n\nToday is the day! {event_title}\n\n"
            "Date: {event_date}\nLocation: {event_location}\n\nSee you there!"
        ),
        MessageType.THANK_YOU: (
            "Hello {guest_name}!\n\nThank you for celebrating {event_title} with us.\n\n"
            "It was wonderful to see you!"
        ),
    },
}


def rsvp_link(recipient: Recipient, base_url: str | None = None) -> str:
    base = (base_url or settings.app_base_url).rstrip("/")
    return f"{base}/rsvp/{recipient.slug}"


def render_message(
    message_type: MessageType,
    recipient: Recipient,
    event: Event,
    *,
    base_url: str | None = None,
) -> str:
    """Message text for one guest."""
    templates = TEMPLATES.get(event.locale, TEMPLATES["he"])
    location = ", ".join(part for part in (event.venue, event.location) if part)
    return templates[message_type].format(
        guest_name=recipient.name,
        event_title=event.title,
        rsvp_link=rsvp_link(recipient, base_url),
        event_date=event.starts_at.strftime("%d/%m/%Y %H:%M") if event.starts_at else "",
        event_location=location,
    )


def template_variables(
    message_type: MessageType,
    recipient: Recipient,
    event: Event,
    *,
    base_url: str | None = None,
) -> dict[str, str]:
    """
    Numbered placeholders of the approved WhatsApp templates.

    {{1}} guest name, {{2}} event title, then per message type:
    INVITE / REMINDER {{3}} RSVP link; EVENT_DAY {{3}} venue,
    {{4}} address, {{5}} date, {{6}} time.
    """
    values = [recipient.name, event.title]
    if message_type in (MessageType.INVITE, MessageType.REMINDER):
        values.append(rsvp_link(recipient, base_url))
    elif message_type == MessageType.EVENT_DAY:
        values += [
            event.venue or "",
            event.location,
            event.starts_at.strftime("%d/%m/%Y") if event.starts_at else "",
            event.starts_at.strftime("%H:%M") if event.starts_at else "",
        ]
    return {str(i): value for i, value in enumerate(values, start=1)}


class ChannelNotificationDispatcher:
    """
    NotificationDispatcher over the configured WhatsApp provider and
    Twilio SMS.

    WhatsApp goes out as the approved template for the message type
    when one is configured, as free-form text otherwise.  SMS is always
    the rendered text.
    """

    def __init__(self, provider: str | None = None, *, base_url: str | None = None):
        self._provider = provider or settings.channel_provider
        if self._provider not in ("twilio", "meta"):
            raise ValueError(f"Unknown channel provider: {self._provider}")
        self._base_url = base_url

    @property
    def channel(self) -> str:
        return self._provider

    def resolve_channel(self, requested: DeliveryChannel) -> DeliveryChannel:
        """WHATSAPP or SMS for one send. AUTO prefers WhatsApp."""
        if requested != DeliveryChannel.AUTO:
            return requested
        if settings.whatsapp_enabled or not settings.sms_enabled:
            return DeliveryChannel.WHATSAPP
        return DeliveryChannel.SMS

    async def send(
        self,
        recipient: Recipient,
        event: Event,
        message_type: MessageType,
        *,
        phone: str,
        channel: DeliveryChannel = DeliveryChannel.AUTO,
    ) -> ChannelResult:
        effective = self.resolve_channel(channel)
        label = "sms" if effective == DeliveryChannel.SMS else self._provider

        try:
            if effective == DeliveryChannel.SMS:
                text = render_message(message_type, recipient, event, base_url=self._base_url)
                message_id = await twilio_sender.send_sms_message(phone, text)
            else:
                message_id = await self._send_whatsapp(recipient, event, message_type, phone)
        except (MetaSendError, TwilioSendError) as exc:
            return ChannelResult(
                accepted=False,
                channel=label,
                retryable=exc.retryable,
                error=str(exc)[:500],
            )

        return ChannelResult(accepted=True, channel=label, provider_message_id=message_id)

    async def _send_whatsapp(
        self,
        recipient: Recipient,
        event: Event,
        message_type: MessageType,
        phone: str,
    ) -> str | None:
        template = settings.whatsapp_template_for(message_type.value)

        if template:
            variables = template_variables(message_type, recipient, event, base_url=self._base_url)
            if self._provider == "meta":
                body = await meta_sender.send_template_message(
                    phone, template, language=event.locale, parameters=list(variables.values()),
                )
                return meta_sender.message_id_of(body)
            return await twilio_sender.send_whatsapp_template(phone, template, variables)

        text = render_message(message_type, recipient, event, base_url=self._base_url)
        if self._provider == "meta":
            body = await meta_sender.send_text_message(phone, text)
            return meta_sender.message_id_of(body)
        return await twilio_sender.send_whatsapp_message(phone, text)
