# bulksend/transport/twilio_sender.py
"""
Twilio outbound sender: WhatsApp (text or approved template) and SMS.

The Twilio SDK is synchronous; sends run in a worker thread so the
event loop keeps serving other requests while one chunk is dispatching.

Error classification (TwilioSendError.retryable):
- 429 / 63038 (rate limit)           → retryable
- 5xx, connection errors             → retryable
- read timeout (delivery unknown)    → NOT retryable
- 20003 / 401 (auth)                 → NOT retryable
- 21211 / 21614 / 63003 (bad number) → NOT retryable
- 21610 (recipient unsubscribed)     → NOT retryable
- 63016 (outside 24h window)         → NOT retryable
- any other 4xx                      → NOT retryable
"""
from __future__ import annotations

import asyncio
import json

import requests
from twilio.base.exceptions import TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from bulksend.config import settings
from bulksend.infra.logging_config import get_logger, mask_phone
from bulksend.infra.metrics import inc_counter

logger = get_logger(__name__)

RATE_LIMIT_CODES = frozenset({63038})
PERMANENT_CODES = frozenset({20003, 21211, 21408, 21610, 21614, 63003, 63016})

# Twilio client (lazy initialization)
_twilio_client: Client | None = None


class TwilioSendError(Exception):
    """Error sending a message via Twilio.

    Attributes:
        status:    HTTP status code (0 for connection-level errors).
        code:      Twilio error code, if any.
        retryable: Whether a later attempt could succeed.
    """

    def __init__(self, status: int, code: int | None, message: str, *, retryable: bool = False):
        self.status = status
        self.code = code
        self.retryable = retryable
        super().__init__(f"Twilio error {status} (code={code}): {message}")


def _get_twilio_client() -> Client:
    """Get or create Twilio client."""
    global _twilio_client
    if _twilio_client is None:
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            raise TwilioSendError(0, None, "Twilio credentials not configured", retryable=False)
        _twilio_client = Client(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            http_client=TwilioHttpClient(timeout=settings.channel_timeout_seconds),
        )
    return _twilio_client


def _whatsapp(address: str) -> str:
    return address if address.startswith("whatsapp:") else f"whatsapp:{address}"


def classify_exception(exc: TwilioRestException) -> TwilioSendError:
    """Map a Twilio REST error onto a classified TwilioSendError."""
    status = exc.status or 0
    code = exc.code

    if status == 429 or code in RATE_LIMIT_CODES:
        inc_counter("twilio_outbound_rate_limited")
        retryable = True
    elif code in PERMANENT_CODES or status == 401:
        inc_counter("twilio_outbound_rejected", code=str(code))
        retryable = False
    elif status >= 500:
        inc_counter("twilio_outbound_error")
        retryable = True
    else:
        inc_counter("twilio_outbound_rejected", code=str(code))
        retryable = False

    return TwilioSendError(status, code, exc.msg or str(exc), retryable=retryable)


async def _create_message(to: str, **params) -> str:
    """
    Create one Twilio message and return its SID.

    The only deadline is the HTTP client's timeout.  Once the request
    has been written Twilio may accept it even if the response is lost,
    so a read timeout is reported as not retryable (delivery unknown)
    and the guest is never picked for an automatic resend.
    """
    client = _get_twilio_client()

    try:
        result = await asyncio.to_thread(client.messages.create, to=to, **params)
    except TwilioRestException as exc:
        error = classify_exception(exc)
        log = logger.error if error.retryable else logger.warning
        log(f"Twilio send failed: to={mask_phone(to)}, status={error.status}, code={error.code}")
        raise error
    except requests.exceptions.ReadTimeout:
        logger.error(f"Twilio send timed out waiting for a response: to={mask_phone(to)}")
        inc_counter("twilio_outbound_timeout")
        raise TwilioSendError(0, None, "timeout after request was sent, delivery unknown", retryable=False)
    except Exception as exc:
        logger.error(f"Twilio send error: {type(exc).__name__}", exc_info=True)
        inc_counter("twilio_outbound_connection_error")
        raise TwilioSendError(0, None, type(exc).__name__, retryable=True)

    logger.info(f"Twilio message sent: sid={result.sid[:8]}***, to={mask_phone(to)}")
    inc_counter("twilio_outbound_sent")
    return result.sid


async def send_whatsapp_message(to: str, body: str) -> str:
    """
    Send a free-form WhatsApp text via Twilio.

    Only delivered inside the 24h customer-service window; use
    send_whatsapp_template for business-initiated messages.

    Args:
        to: Recipient phone number in E.164
        body: Message text

    Returns:
        Twilio message SID

    Raises:
        TwilioSendError: On API errors (check .retryable)
    """
    return await _create_message(
        _whatsapp(to),
        from_=_whatsapp(settings.twilio_phone_number or ""),
        body=body,
    )


async def send_whatsapp_template(to: str, content_sid: str, variables: dict[str, str]) -> str:
    """Send an approved WhatsApp Content Template ({{1}}, {{2}}, ... filled from variables)."""
    return await _create_message(
        _whatsapp(to),
        from_=_whatsapp(settings.twilio_phone_number or ""),
        content_sid=content_sid,
        content_variables=json.dumps(variables, ensure_ascii=False),
    )


async def send_sms_message(to: str, body: str) -> str:
    """
    Send an SMS via Twilio.

    A Messaging Service, when configured, picks the sender itself;
    otherwise twilio_sms_number is used.
    """
    if settings.twilio_messaging_service_sid:
        sender = {"messaging_service_sid": settings.twilio_messaging_service_sid}
    elif settings.twilio_sms_number:
        sender = {"from_": settings.twilio_sms_number}
    else:
        raise TwilioSendError(0, None, "SMS sender not configured", retryable=False)

    return await _create_message(to, body=body, **sender)
