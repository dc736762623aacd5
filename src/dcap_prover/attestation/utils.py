"""
Shared utility functions for attestation modules.

This module has no intra-package dependencies, so any module
can import from it without risk of circular imports.
"""

import base64
import binascii
import os

from .types import REPORT_DATA_SIZE


def generate_report_data() -> bytes:
    """Return 64 bytes from the OS CSPRNG to bind into a quote."""
    return os.urandom(REPORT_DATA_SIZE)


def b64url_encode(data: bytes) -> str:
    """Encode bytes as URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    """Decode URL-safe base64, with or without trailing padding.

    Raises:
        ValueError: If the input is not valid base64url
    """
    stripped = text.strip().rstrip("=")
    padded = stripped + "=" * (-len(stripped) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def strip_hex_prefix(text: str) -> str:
    text = text.strip()
    if text[:2] in ("0x", "0X"):
        return text[2:]
    return text


def decode_hex(text: str) -> bytes:
    """Decode a hex string with an optional 0x prefix.

    Raises:
        ValueError: If the input is not valid hex
    """
    try:
        return bytes.fromhex(strip_hex_prefix(text))
    except ValueError as e:
        raise ValueError(f"Invalid hex data: {e}") from e
