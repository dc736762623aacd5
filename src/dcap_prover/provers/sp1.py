"""
SP1 guest program adapter.

The SP1 guest reads a JSON document:

    {
        "raw_quote": "<hex>",
        "collateral": {
            "root_ca_crl": "<hex>",
            "pck_crl": "<hex>",
            "issuer_chain": "<hex>",
            "tcb_info": "<json text>",
            "qe_identity": "<json text>"
        },
        "timestamp": <unix seconds>
    }
"""

import json

from ..attestation.collateral import CollateralBundle
from ..attestation.types import EncodingError
from ..attestation.utils import decode_hex
from .base import GuestInput, ProverBackend


class Sp1Backend(ProverBackend):
    name = "sp1"

    def encode_input(self, guest_input: GuestInput) -> bytes:
        bundle = guest_input.collateral
        document = {
            "raw_quote": guest_input.raw_quote.hex(),
            "collateral": {
                "root_ca_crl": bundle.root_ca_crl.hex(),
                "pck_crl": bundle.pck_crl.hex(),
                "issuer_chain": bundle.issuer_chain.hex(),
                "tcb_info": bundle.tcb_info,
                "qe_identity": bundle.qe_identity,
            },
            "timestamp": guest_input.timestamp,
        }
        return json.dumps(document, separators=(",", ":")).encode("utf-8")

    @staticmethod
    def decode_input(data: bytes) -> GuestInput:
        try:
            document = json.loads(data)
            collateral = document["collateral"]
            return GuestInput(
                raw_quote=decode_hex(document["raw_quote"]),
                collateral=CollateralBundle(
                    root_ca_crl=decode_hex(collateral["root_ca_crl"]),
                    pck_crl=decode_hex(collateral["pck_crl"]),
                    issuer_chain=decode_hex(collateral["issuer_chain"]),
                    tcb_info=collateral["tcb_info"],
                    qe_identity=collateral["qe_identity"],
                ),
                timestamp=int(document["timestamp"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise EncodingError(f"Invalid SP1 guest input: {e}") from e
