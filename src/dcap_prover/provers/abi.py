"""
Minimal Solidity ABI parameter codec.

Supports the static `uint64` type and the dynamic `bytes` and `string`
types, which is all the guest programs' input tuples use. Encoding follows
`abi.encode(...)` of a parameter list: a head of 32-byte words (values for
static types, offsets for dynamic ones) followed by the dynamic tails.
"""

from typing import List, Sequence, Union

from ..attestation.types import EncodingError

WORD_SIZE = 32
UINT64_MAX = 0xFFFFFFFFFFFFFFFF

AbiValue = Union[bytes, str, int]

_DYNAMIC_TYPES = ("bytes", "string")


def _word(value: int) -> bytes:
    return value.to_bytes(WORD_SIZE, "big")


def _pad(data: bytes) -> bytes:
    return data + b"\x00" * (-len(data) % WORD_SIZE)


def encode_params(types: Sequence[str], values: Sequence[AbiValue]) -> bytes:
    """
    ABI-encode a parameter list.

    Raises:
        EncodingError: On an unsupported type or a value that does not fit
    """
    if len(types) != len(values):
        raise EncodingError(f"Got {len(values)} values for {len(types)} types")

    head = []
    tail = []
    tail_offset = WORD_SIZE * len(types)

    for abi_type, value in zip(types, values):
        if abi_type == "uint64":
            if not isinstance(value, int) or not 0 <= value <= UINT64_MAX:
                raise EncodingError(f"Value {value!r} is not a uint64")
            head.append(_word(value))
        elif abi_type in _DYNAMIC_TYPES:
            if abi_type == "string":
                if not isinstance(value, str):
                    raise EncodingError(f"Value of type {type(value).__name__} is not a string")
                data = value.encode("utf-8")
            else:
                if not isinstance(value, (bytes, bytearray)):
                    raise EncodingError(f"Value of type {type(value).__name__} is not bytes")
                data = bytes(value)
            encoded = _word(len(data)) + _pad(data)
            head.append(_word(tail_offset))
            tail.append(encoded)
            tail_offset += len(encoded)
        else:
            raise EncodingError(f"Unsupported ABI type: {abi_type}")

    return b"".join(head + tail)


def _read_word(data: bytes, offset: int) -> int:
    if offset + WORD_SIZE > len(data):
        raise EncodingError(f"ABI data truncated at offset {offset}")
    return int.from_bytes(data[offset:offset + WORD_SIZE], "big")


def decode_params(types: Sequence[str], data: bytes) -> List[AbiValue]:
    """
    Decode an ABI-encoded parameter list.

    Raises:
        EncodingError: On an unsupported type or malformed data
    """
    values = []
    for index, abi_type in enumerate(types):
        word = _read_word(data, index * WORD_SIZE)
        if abi_type == "uint64":
            if word > UINT64_MAX:
                raise EncodingError(f"Value {word} does not fit in uint64")
            values.append(word)
        elif abi_type in _DYNAMIC_TYPES:
            length = _read_word(data, word)
            start = word + WORD_SIZE
            if start + length > len(data):
                raise EncodingError(f"ABI {abi_type} at offset {word} exceeds data")
            raw = data[start:start + length]
            if abi_type == "string":
                try:
                    values.append(raw.decode("utf-8"))
                except UnicodeDecodeError as e:
                    raise EncodingError(f"ABI string is not UTF-8: {e}") from e
            else:
                values.append(raw)
        else:
            raise EncodingError(f"Unsupported ABI type: {abi_type}")
    return values
