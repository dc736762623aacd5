"""
Boundless guest program adapter.

Input layout (little-endian):

    u64 timestamp | u32 quote_len | u32 collateral_len | quote | collateral

where `collateral` is the ABI-encoded collateral tuple.
"""

import struct

from ..attestation.types import EncodingError
from .base import GuestInput, ProverBackend, decode_collateral_abi, encode_collateral_abi

INPUT_HEADER = struct.Struct("<QII")


class BoundlessBackend(ProverBackend):
    name = "boundless"

    def encode_input(self, guest_input: GuestInput) -> bytes:
        quote = guest_input.raw_quote
        collateral = encode_collateral_abi(guest_input.collateral)
        try:
            header = INPUT_HEADER.pack(guest_input.timestamp, len(quote), len(collateral))
        except struct.error as e:
            raise EncodingError(f"Cannot pack Boundless input header: {e}") from e
        return header + quote + collateral

    @staticmethod
    def decode_input(data: bytes) -> GuestInput:
        if len(data) < INPUT_HEADER.size:
            raise EncodingError(f"Boundless input too short: {len(data)} bytes")
        timestamp, quote_len, collateral_len = INPUT_HEADER.unpack_from(data, 0)
        offset = INPUT_HEADER.size
        if len(data) != offset + quote_len + collateral_len:
            raise EncodingError(
                f"Boundless input is {len(data)} bytes, header declares "
                f"{offset + quote_len + collateral_len}"
            )
        quote = data[offset:offset + quote_len]
        collateral = data[offset + quote_len:]
        return GuestInput(
            raw_quote=quote,
            collateral=decode_collateral_abi(collateral),
            timestamp=timestamp,
        )
