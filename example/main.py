import argparse
import logging
import sys

from dcap_prover.attestation import (
    DeviceKind,
    IntelPcsCollateralSource,
    acquire,
    assemble_artifacts,
    collateral_hashes,
    inspect_quote,
)
from dcap_prover.pipeline import parse_quote_batch


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('-q', '--quote',
                       help='Hex-encoded quote(s), comma-separated')
    parser.add_argument('-d', '--device',
                       choices=[k.value for k in DeviceKind if k != DeviceKind.MOCK],
                       help='Acquire a quote from this attestation device')
    parser.add_argument('--fetch-collateral', action='store_true',
                       help='Fetch collateral from Intel PCS and print its content hashes')
    args = parser.parse_args()

    logging.basicConfig(
        format='%(message)s',
        level=logging.INFO
    )

    try:
        if args.quote:
            quotes = parse_quote_batch(args.quote)
        else:
            device = DeviceKind(args.device) if args.device else None
            logging.info(f"Acquiring quote from {device.value if device else 'detected'} device")
            quotes = [acquire(device).report]

        source = IntelPcsCollateralSource() if args.fetch_collateral else None

        for raw_quote in quotes:
            print(inspect_quote(raw_quote))
            if source is None:
                continue

            logging.info("Fetching collateral from Intel PCS")
            bundle = assemble_artifacts(source.fetch(raw_quote))
            hashes = collateral_hashes(bundle)
            for name, value in zip(
                ("tcb_info", "qe_identity", "root_ca", "tcb_signing_ca", "root_ca_crl", "pck_crl"),
                hashes.as_tuple(),
            ):
                print(f"{name}: {value.hex()}")

    except Exception as e:
        logging.error(f"Error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
