"""ID generation and parsing utilities.

Centralizes the naming knowledge so callers never need to
construct or parse channel names and storage keys directly.

Channel names: {domain}-{name}-{version}
Storage keys: channel name with reserved characters escaped as !XX
Correlation IDs: 32-char uuid4 hex
"""

from __future__ import annotations

import re
import uuid

from .exceptions import ValidationError

_RESERVED = re.compile(r"[/.$\[\]#!\\?]")
_ESCAPE = re.compile(r"!([0-9a-fA-F]{2})")


def encode_key(component: str) -> str:
    """Escape characters that are unsafe in file names and document IDs.

    Exclamation marks are used instead of percent signs so encoded keys
    survive URL handling unchanged.
    """
    return _RESERVED.sub(lambda m: f"!{ord(m.group(0)):02X}", component)


def decode_key(component: str) -> str:
    """Reverse :func:`encode_key`."""
    return _ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), component)


def channel_name(domain: str, name: str, version: int) -> str:
    """Build a versioned channel name."""
    if not domain or "-" in domain:
        raise ValidationError("domain", "must be non-empty and contain no dashes", domain)
    if not name:
        raise ValidationError("name", "must be non-empty")
    if version < 0:
        raise ValidationError("version", "must be >= 0", str(version))
    return f"{domain}-{name}-{version}"


def parse_channel_name(channel: str) -> tuple[str, str, int]:
    """Split a channel name into (domain, name, version).

    Raises ValidationError on malformed input.
    """
    try:
        head, version = channel.rsplit("-", 1)
        domain, name = head.split("-", 1)
        if not domain or not name:
            raise ValueError
        return domain, name, int(version)
    except ValueError:
        raise ValidationError("channel", "expected <domain>-<name>-<version>", channel) from None


def previous_channel_name(channel: str) -> str:
    """Name of the channel one version before ``channel``."""
    domain, name, version = parse_channel_name(channel)
    if version == 0:
        raise ValidationError("channel", "version 0 has no predecessor", channel)
    return channel_name(domain, name, version - 1)


def new_correlation_id() -> str:
    """Generate a correlation ID for an emitted action.

    Random 128-bit IDs keep actions from different devices on the same
    channel from colliding in each other's resolver tables.
    """
    return uuid.uuid4().hex
