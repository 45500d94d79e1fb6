"""
Idempotency Key Generation

Different ingress channels carry different natural dedup tokens. Bots
resend the same platform message id when a webhook is retried; apps
generate a client request id per user action. Both are folded into one
format so the job table can enforce uniqueness with a single constraint.

Format:
- Bot (telegram/whatsapp): {channel}:{message_id}
- App / API:               {channel}:{client_request_id}
"""

from typing import NamedTuple, Optional, Union

from pixelqueue.core.exceptions import InvalidInputError, InvalidKeyFormatError
from pixelqueue.modules.jobs.models import BOT_CHANNELS, SourceChannel

SEPARATOR = ":"


class IdempotencyKeyParts(NamedTuple):
    channel: str
    id: str


def derive_key(
    channel: Union[SourceChannel, str],
    message_id: Optional[str] = None,
    client_request_id: Optional[str] = None
) -> str:
    """
    Derive the idempotency key for a job submission.

    Raises:
        InvalidInputError: unknown channel, or the channel's token is missing
    """
    try:
        channel = SourceChannel(channel)
    except ValueError:
        raise InvalidInputError(f"Unknown source channel: {channel!r}")

    if channel in BOT_CHANNELS:
        if not message_id:
            raise InvalidInputError(f"Message ID required for {channel.value} channel")
        return f"{channel.value}{SEPARATOR}{message_id}"

    if not client_request_id:
        raise InvalidInputError(f"Client request ID required for {channel.value} channel")
    return f"{channel.value}{SEPARATOR}{client_request_id}"


def parse_key(key: str) -> IdempotencyKeyParts:
    """Split a key at its first separator. Ids may contain the separator."""
    index = key.find(SEPARATOR)
    if index == -1:
        raise InvalidKeyFormatError(f"Invalid idempotency key format: {key!r}")
    return IdempotencyKeyParts(channel=key[:index], id=key[index + 1:])


def is_valid_key(key: Optional[str]) -> bool:
    """Cheap structural check run before any lookup."""
    if not key or len(key) < 3:
        return False
    index = key.find(SEPARATOR)
    return 0 < index < len(key) - 1
