"""
panel-agent Crypto Module
Keyed digest for the panel handshake and random bytes for identities.

The panel only ever sees MD5(<challenge material> + <password>), so the
shared password never crosses the wire. MD5 is what the panel checks;
it is not a general-purpose integrity primitive here.
"""

from datetime import datetime, timezone
from typing import Optional

from Crypto.Hash import MD5
from Crypto.Random import get_random_bytes


def md5_hex(text: str) -> str:
    """Hex MD5 digest of the UTF-8 encoding of ``text``."""
    return MD5.new(str(text).encode('utf-8')).hexdigest()


def timestamp_digest(timestamp: str, password: str) -> str:
    """
    Digest for client-initiated verification.

    Format: MD5("<timestamp>.<password>")
    """
    return md5_hex(f"{timestamp}.{password}")


def challenge_digest(nonce: str, password: str) -> str:
    """
    Digest for server-initiated verification.

    Format: MD5("<nonce><password>")
    """
    return md5_hex(f"{nonce}{password}")


def iso_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp with millisecond precision and a ``Z`` suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def random_bytes(count: int) -> bytes:
    return get_random_bytes(count)
