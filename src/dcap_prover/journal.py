"""
Journal encoding.

A journal is the fixed binary record a proof system commits to after
verifying a quote. Layout (big-endian):

    offset      size  field
    0           2     L, length of the verified output
    2           L     verified output (opaque oracle record)
    2+L         8     verification timestamp (unix seconds)
    10+L        32    TCB info content hash
    42+L        32    QE identity content hash
    74+L        32    Intel SGX root CA hash
    106+L       32    TCB signing CA hash
    138+L       32    root CA CRL hash
    170+L       32    PCK CRL hash

The field order is part of the on-chain contract and must not change.
"""

import struct
from dataclasses import dataclass

from .attestation.collateral import CollateralHashes
from .attestation.types import (
    HASH_SIZE,
    EncodingError,
    TruncatedJournalError,
    VerificationResult,
)

LENGTH_PREFIX = struct.Struct(">H")
TIMESTAMP = struct.Struct(">Q")
HASH_COUNT = 6
TRAILER_SIZE = TIMESTAMP.size + HASH_COUNT * HASH_SIZE  # 200 bytes
MAX_OUTPUT_SIZE = 0xFFFF

_HASH_FIELDS = (
    "tcb_info_hash",
    "qe_identity_hash",
    "root_ca_hash",
    "tcb_signing_ca_hash",
    "root_ca_crl_hash",
    "pck_crl_hash",
)


@dataclass(frozen=True)
class Journal:
    """A decoded journal."""
    verified_output: bytes
    timestamp: int
    tcb_info_hash: bytes
    qe_identity_hash: bytes
    root_ca_hash: bytes
    tcb_signing_ca_hash: bytes
    root_ca_crl_hash: bytes
    pck_crl_hash: bytes

    @property
    def hashes(self) -> CollateralHashes:
        return CollateralHashes(
            tcb_info=self.tcb_info_hash,
            qe_identity=self.qe_identity_hash,
            root_ca=self.root_ca_hash,
            tcb_signing_ca=self.tcb_signing_ca_hash,
            root_ca_crl=self.root_ca_crl_hash,
            pck_crl=self.pck_crl_hash,
        )

    def encode(self) -> bytes:
        return encode(
            VerificationResult(output=self.verified_output, timestamp=self.timestamp),
            self.timestamp,
            self.hashes,
        )

    def __str__(self) -> str:
        return (
            f"Journal(verified_output={len(self.verified_output)} bytes, "
            f"timestamp={self.timestamp}, "
            f"tcb_info_hash={self.tcb_info_hash.hex()}, "
            f"qe_identity_hash={self.qe_identity_hash.hex()}, "
            f"root_ca_hash={self.root_ca_hash.hex()}, "
            f"tcb_signing_ca_hash={self.tcb_signing_ca_hash.hex()}, "
            f"root_ca_crl_hash={self.root_ca_crl_hash.hex()}, "
            f"pck_crl_hash={self.pck_crl_hash.hex()})"
        )


def encode(result: VerificationResult, timestamp: int, hashes: CollateralHashes) -> bytes:
    """
    Encode a verification result into journal bytes.

    Args:
        result: Oracle output (its own timestamp is not used)
        timestamp: Verification time written to the journal
        hashes: The six collateral content hashes

    Raises:
        EncodingError: If the output exceeds 65535 bytes, the timestamp does
            not fit in u64, or a hash is not 32 bytes
    """
    output = result.output
    if len(output) > MAX_OUTPUT_SIZE:
        raise EncodingError(
            f"Verified output is {len(output)} bytes, maximum is {MAX_OUTPUT_SIZE}"
        )
    if not 0 <= timestamp <= 0xFFFFFFFFFFFFFFFF:
        raise EncodingError(f"Timestamp {timestamp} does not fit in u64")

    values = hashes.as_tuple()
    for name, value in zip(_HASH_FIELDS, values):
        if len(value) != HASH_SIZE:
            raise EncodingError(f"{name} is {len(value)} bytes, expected {HASH_SIZE}")

    return b"".join((
        LENGTH_PREFIX.pack(len(output)),
        output,
        TIMESTAMP.pack(timestamp),
        *values,
    ))


def decode(buf: bytes) -> Journal:
    """
    Decode journal bytes.

    Raises:
        TruncatedJournalError: If the buffer is shorter than the length
            prefix, the declared output, or the 200-byte trailer
        EncodingError: If bytes remain after the trailer
    """
    if len(buf) < LENGTH_PREFIX.size:
        raise TruncatedJournalError(f"Journal too short for length prefix: {len(buf)} bytes")

    (output_len,) = LENGTH_PREFIX.unpack_from(buf, 0)
    offset = LENGTH_PREFIX.size
    expected = offset + output_len + TRAILER_SIZE
    if len(buf) < expected:
        raise TruncatedJournalError(
            f"Journal truncated: declared output of {output_len} bytes needs "
            f"{expected} bytes, got {len(buf)}"
        )
    if len(buf) > expected:
        raise EncodingError(
            f"Journal has {len(buf) - expected} unexpected trailing bytes"
        )

    output = bytes(buf[offset:offset + output_len])
    offset += output_len
    (timestamp,) = TIMESTAMP.unpack_from(buf, offset)
    offset += TIMESTAMP.size

    hashes = {}
    for name in _HASH_FIELDS:
        hashes[name] = bytes(buf[offset:offset + HASH_SIZE])
        offset += HASH_SIZE

    return Journal(verified_output=output, timestamp=timestamp, **hashes)
