# bulksend/transport/meta_sender.py
"""
Meta WhatsApp Cloud API outbound sender.

Error classification (MetaSendError.retryable):
- Token expired/invalid  → NOT retryable (needs human intervention)
- Template required/bad  → NOT retryable (outside 24h window, unknown template)
- Invalid recipient       → NOT retryable (number not on WhatsApp)
- Rate limiting (429)     → retryable  (backoff then retry)
- Network, connect timeout → retryable  (transient)
- Response timeout        → NOT retryable (request sent, delivery unknown)
- Unknown server error    → retryable  (optimistic)

HTTP session lifecycle:
- Uses the shared sender session from bulksend.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio

import aiohttp

from bulksend.config import settings
from bulksend.infra.http_client import get_sender_session
from bulksend.infra.logging_config import get_logger, mask_phone
from bulksend.infra.metrics import inc_counter

logger = get_logger(__name__)

# Template does not exist / parameter mismatch / paused
_TEMPLATE_ERROR_CODES = frozenset({132000, 132001, 132005, 132007, 132012, 132015})


def _graph_url(path: str, *, graph_api_version: str | None = None) -> str:
    """Build Graph API URL."""
    version = graph_api_version or settings.meta_graph_api_version
    return f"https://graph.facebook.com/{version}/{path}"


def _auth_headers(*, access_token: str | None = None) -> dict[str, str]:
    """Common auth headers for Graph API."""
    token = access_token or settings.meta_access_token
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


class MetaSendError(Exception):
    """Error sending message via Meta Graph API.

    Attributes:
        status:     HTTP status code (0 for connection-level errors).
        error_code: Meta-specific error code from the response body.
        retryable:  Whether a later attempt could succeed.
                    False for auth failures, template errors and invalid
                    recipients.  True for rate limits and transient
                    network errors.
    """

    def __init__(
        self,
        status: int,
        error_code: int | None,
        message: str,
        *,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Meta API error {status} (code={error_code}): {message}")


async def send_text_message(
    to: str,
    text: str,
    *,
    access_token: str | None = None,
    phone_number_id: str | None = None,
    graph_api_version: str | None = None,
) -> dict:
    """
    Send a text message via Meta Graph API.

    Args:
        to: Recipient phone number in E.164 (the leading + is stripped)
        text: Message text body
        access_token: Override access token (defaults to settings)
        phone_number_id: Override phone number ID (defaults to settings)
        graph_api_version: Override Graph API version (defaults to settings)

    Returns:
        Meta API response dict with message ID

    Raises:
        MetaSendError: On API errors (check .retryable)
    """
    pid = phone_number_id or settings.meta_phone_number_id
    url = _graph_url(f"{pid}/messages", graph_api_version=graph_api_version)
    payload = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to.lstrip("+"),
        "type": "text",
        "text": {"body": text},
    }

    return await _send_request(url, payload, to, access_token=access_token)


async def send_template_message(
    to: str,
    template_name: str,
    *,
    language: str,
    parameters: list[str],
    access_token: str | None = None,
    phone_number_id: str | None = None,
    graph_api_version: str | None = None,
) -> dict:
    """
    Send an approved WhatsApp template via Meta Graph API.

    Templates are the only business-initiated messages Meta delivers
    outside the 24h window.  ``parameters`` fill the body placeholders
    in order.
    """
    pid = phone_number_id or settings.meta_phone_number_id
    url = _graph_url(f"{pid}/messages", graph_api_version=graph_api_version)
    template: dict = {"name": template_name, "language": {"code": language}}
    if parameters:
        template["components"] = [{
            "type": "body",
            "parameters": [{"type": "text", "text": value} for value in parameters],
        }]
    payload = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to.lstrip("+"),
        "type": "template",
        "template": template,
    }

    return await _send_request(url, payload, to, access_token=access_token)


def message_id_of(body: dict) -> str | None:
    """Provider message id from a successful send response."""
    messages = body.get("messages") or [{}]
    return messages[0].get("id")


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json()
    except (aiohttp.ContentTypeError, ValueError):
        logger.warning(f"Meta API returned non-JSON body: status={resp.status}")
        return None


def classify_error(status: int, body: dict | None) -> MetaSendError:
    """Turn a failed Graph API response into a classified MetaSendError."""
    error = (body or {}).get("error", {})
    error_code = error.get("code")
    error_msg = error.get("message", "Unknown error")
    error_subcode = error.get("error_subcode")

    # Auth failure: token expired / invalid
    if status == 401 or error_code == 190:
        inc_counter("meta_outbound_auth_error")
        return MetaSendError(status, error_code, error_msg, retryable=False)

    # Rate limit
    if status == 429 or error_code in (4, 80007, 130429, 131056):
        inc_counter("meta_outbound_rate_limited")
        return MetaSendError(status, error_code, error_msg, retryable=True)

    # Template required (outside 24h window) or template problem
    if error_subcode == 2388049 or error_code in _TEMPLATE_ERROR_CODES:
        inc_counter("meta_outbound_template_error")
        return MetaSendError(status, error_code, error_msg, retryable=False)

    # Recipient not on WhatsApp
    if error_code == 131026:
        inc_counter("meta_outbound_invalid_recipient")
        return MetaSendError(status, error_code, error_msg, retryable=False)

    inc_counter("meta_outbound_error")
    return MetaSendError(status, error_code, error_msg, retryable=True)


async def _send_request(
    url: str,
    payload: dict,
    to: str,
    *,
    access_token: str | None = None,
) -> dict:
    """
    Execute a Graph API send request with error handling.

    Classifies every error as retryable or not, then raises MetaSendError
    so the caller can record it.
    """
    try:
        session = get_sender_session()
        async with session.post(
            url,
            json=payload,
            headers=_auth_headers(access_token=access_token),
        ) as resp:
            body = await _safe_response_json(resp)

            if resp.status in (200, 201) and body is not None:
                msg_id = message_id_of(body) or "unknown"
                logger.info(f"Meta message sent: to={mask_phone(to)}, msg_id={msg_id[:20]}")
                inc_counter("meta_outbound_sent")
                return body

            exc = classify_error(resp.status, body)
            log = logger.error if exc.retryable else logger.warning
            log(
                f"Meta API send failed: to={mask_phone(to)}, status={resp.status}, "
                f"code={exc.error_code}, retryable={exc.retryable}"
            )
            raise exc

    except MetaSendError:
        raise
    except aiohttp.ConnectionTimeoutError as exc:
        logger.error(f"Meta API connect timeout: {type(exc).__name__}")
        inc_counter("meta_outbound_connection_error")
        raise MetaSendError(0, None, type(exc).__name__, retryable=True)
    except asyncio.TimeoutError:
        # Request was sent; Meta may have accepted it
        logger.error(f"Meta API timed out waiting for a response: to={mask_phone(to)}")
        inc_counter("meta_outbound_timeout")
        raise MetaSendError(0, None, "timeout after request was sent, delivery unknown", retryable=False)
    except aiohttp.ClientError as exc:
        logger.error(f"Meta API connection error: {type(exc).__name__}", exc_info=True)
        inc_counter("meta_outbound_connection_error")
        raise MetaSendError(0, None, type(exc).__name__, retryable=True)
    except Exception as exc:
        logger.error(f"Meta API unexpected error: {type(exc).__name__}", exc_info=True)
        inc_counter("meta_outbound_unexpected_error")
        raise MetaSendError(0, None, type(exc).__name__, retryable=True)
