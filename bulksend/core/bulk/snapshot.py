# bulksend/core/bulk/snapshot.py
"""
Recipient snapshot resolution.

A job is scoped to the recipients that were eligible when it was
created; guests added later are not picked up by a running job.
"""
from __future__ import annotations

from typing import Optional, Sequence

from bulksend.core.bulk.domain import MessageType, Recipient
from bulksend.core.bulk.errors import ValidationError
from bulksend.core.bulk.ports import RecipientDirectory

NO_ELIGIBLE_RECIPIENTS = "No eligible recipients found"

_RSVP_OPEN = {None, "", "PENDING"}


def is_eligible(recipient: Recipient, message_type: MessageType) -> bool:
    """
    Whether a message type applies to a recipient.

    INVITE skips guests that already got one, REMINDER only targets
    guests who have not answered yet, the rest go to everyone.
    Recipients without a phone number stay eligible; they are skipped
    at dispatch time.
    """
    if message_type == MessageType.INVITE:
        return not recipient.invited
    if message_type == MessageType.REMINDER:
        return (recipient.rsvp_status or "").upper() in _RSVP_OPEN
    return True


async def resolve_recipient_snapshot(
    directory: RecipientDirectory,
    event_id: str,
    message_type: MessageType | str,
    recipient_ids: Optional[Sequence[str]] = None,
) -> list[str]:
    """
    Resolve the fixed recipient set for a new job.

    With an explicit list, ids are intersected with the eligible set:
    unknown or ineligible ids are dropped, duplicates collapse, and the
    caller's order is kept.  Without one (or with an empty one), every
    eligible recipient of the event is returned.

    Raises:
        ValidationError: unknown message type, or nothing left to send to
    """
    if not isinstance(message_type, MessageType):
        message_type = MessageType.parse(message_type)

    eligible = await directory.list_eligible_recipient_ids(event_id, message_type)

    # An empty list means "not supplied"
    if not recipient_ids:
        snapshot = list(dict.fromkeys(eligible))
    else:
        allowed = set(eligible)
        snapshot = [rid for rid in dict.fromkeys(recipient_ids) if rid in allowed]

    if not snapshot:
        raise ValidationError(NO_ELIGIBLE_RECIPIENTS)

    return snapshot
