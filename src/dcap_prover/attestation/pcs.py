"""
Intel PCS collateral source.

Fetches the collateral a quote needs from Intel's Provisioning
Certification Service (PCS):

- TCB Info for the platform FMSPC (signed by the TCB signing CA)
- QE Identity
- PCK CRL for the CA that issued the quote's PCK leaf
- Intel SGX Root CA CRL

Intel PCS API (v4):
    TDX: https://api.trustedservices.intel.com/tdx/certification/v4
    SGX: https://api.trustedservices.intel.com/sgx/certification/v4
    TCB Info: /tcb?fmspc={fmspc}
    QE Identity: /qe/identity
    PCK CRL: /pckcrl?ca={platform|processor}&encoding=der (SGX base only)

No caching is performed; every call goes to the network.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple
from urllib.parse import unquote

from cryptography import x509
from cryptography.hazmat.primitives import serialization
import requests

from .abi_quote import parse_quote
from .cert_utils import parse_pem_chain
from .collateral import CollateralArtifacts
from .intel_root_ca import get_intel_root_ca_der
from .pck_extensions import extract_fmspc_and_issuer
from .types import CollateralFetchError, EncodingError, Fmspc, PckIssuer

logger = logging.getLogger(__name__)

# Intel PCS API base URLs
INTEL_PCS_TDX_BASE_URL = "https://api.trustedservices.intel.com/tdx/certification/v4"
INTEL_PCS_SGX_BASE_URL = "https://api.trustedservices.intel.com/sgx/certification/v4"

# Intel SGX Root CA CRL URL (from the certificate's CRL Distribution Point)
INTEL_SGX_ROOT_CA_CRL_URL = "https://certificates.trustedservices.intel.com/IntelSGXRootCA.der"

TCB_INFO_ISSUER_CHAIN_HEADER = "TCB-Info-Issuer-Chain"

DEFAULT_TIMEOUT = 30.0


class CollateralSource(ABC):
    """Provides collateral artifacts for a raw quote."""

    @abstractmethod
    def fetch(self, raw_quote: bytes) -> CollateralArtifacts:
        """
        Fetch the collateral needed to verify `raw_quote`.

        Artifacts the source cannot provide are left unset.
        """


def _parse_issuer_chain_header(header_value: str) -> List[x509.Certificate]:
    """
    Parse the URL-encoded PEM issuer chain from a PCS response header.

    Returns:
        Certificates, signing cert first and root last

    Raises:
        CollateralFetchError: If parsing fails or fewer than 2 certificates
    """
    pem_data = unquote(header_value).encode("utf-8")
    try:
        certs = parse_pem_chain(pem_data)
    except EncodingError as e:
        raise CollateralFetchError(f"Failed to parse issuer chain certificate: {e}") from e

    if len(certs) < 2:
        raise CollateralFetchError(
            f"Issuer chain should contain at least 2 certificates, got {len(certs)}"
        )
    return certs


def _normalize_crl(raw: bytes, name: str) -> bytes:
    """Return the CRL as DER, accepting a PEM response as well."""
    try:
        if raw.lstrip().startswith(b"-----BEGIN"):
            crl = x509.load_pem_x509_crl(raw)
            return crl.public_bytes(serialization.Encoding.DER)
        x509.load_der_x509_crl(raw)
    except ValueError as e:
        raise CollateralFetchError(f"Failed to parse {name}: {e}") from e
    return raw


class IntelPcsCollateralSource(CollateralSource):
    """
    Collateral source backed by the Intel PCS HTTP API.

    The TCB signing CA and root CA certificates are taken from the TCB info
    response's issuer chain header.

    Args:
        session: requests session to use (a new one is created if None)
        timeout: Request timeout in seconds
        tdx_base_url: PCS base URL for TDX collateral
        sgx_base_url: PCS base URL for SGX collateral and PCK CRLs
        root_ca_crl_url: Location of the Intel SGX Root CA CRL
        require_intel_root: Reject issuer chains not anchored at the
            embedded Intel SGX Root CA
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        tdx_base_url: str = INTEL_PCS_TDX_BASE_URL,
        sgx_base_url: str = INTEL_PCS_SGX_BASE_URL,
        root_ca_crl_url: str = INTEL_SGX_ROOT_CA_CRL_URL,
        require_intel_root: bool = True,
    ):
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.tdx_base_url = tdx_base_url.rstrip("/")
        self.sgx_base_url = sgx_base_url.rstrip("/")
        self.root_ca_crl_url = root_ca_crl_url
        self.require_intel_root = require_intel_root

    def _get(self, url: str, what: str, params: Optional[dict] = None) -> requests.Response:
        logger.debug("Fetching %s from %s", what, url)
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise CollateralFetchError(f"Failed to fetch {what} from Intel PCS: {e}") from e
        return response

    def _base_url(self, is_tdx: bool) -> str:
        return self.tdx_base_url if is_tdx else self.sgx_base_url

    def _check_root(self, chain: List[x509.Certificate], what: str) -> None:
        if not self.require_intel_root:
            return
        intel_root = get_intel_root_ca_der()
        if chain[-1].public_bytes(serialization.Encoding.DER) != intel_root:
            raise CollateralFetchError(
                f"{what} issuer chain root does not match Intel SGX Root CA"
            )

    def fetch_tcb_info(
        self, fmspc: Fmspc, is_tdx: bool = True
    ) -> Tuple[str, List[x509.Certificate]]:
        """
        Fetch TCB Info for an FMSPC.

        Returns:
            Tuple of (TCB info JSON text, issuer chain [signing CA, ..., root])
        """
        response = self._get(
            f"{self._base_url(is_tdx)}/tcb",
            "TCB Info",
            params={"fmspc": fmspc.hex()},
        )

        header = response.headers.get(TCB_INFO_ISSUER_CHAIN_HEADER)
        if not header:
            raise CollateralFetchError(
                f"TCB Info response missing {TCB_INFO_ISSUER_CHAIN_HEADER} header"
            )
        chain = _parse_issuer_chain_header(header)
        self._check_root(chain, "TCB Info")
        return response.text, chain

    def fetch_qe_identity(self, is_tdx: bool = True) -> str:
        response = self._get(f"{self._base_url(is_tdx)}/qe/identity", "QE Identity")
        return response.text

    def fetch_pck_crl(self, issuer: PckIssuer) -> bytes:
        """Fetch the DER CRL of the PCK CA that issued the quote's leaf."""
        response = self._get(
            f"{self.sgx_base_url}/pckcrl",
            f"PCK CRL ({issuer.value})",
            params={"ca": issuer.value, "encoding": "der"},
        )
        return _normalize_crl(response.content, f"PCK CRL ({issuer.value})")

    def fetch_root_ca_crl(self) -> bytes:
        response = self._get(self.root_ca_crl_url, "Intel SGX Root CA CRL")
        return _normalize_crl(response.content, "Intel SGX Root CA CRL")

    def fetch(self, raw_quote: bytes) -> CollateralArtifacts:
        """
        Fetch all six collateral artifacts for a raw quote.

        Raises:
            CollateralFetchError: If any request or response fails
            QuoteParseError, NoCertificatesFoundError, ...: If the quote's
                FMSPC and PCK issuer cannot be extracted
        """
        quote = parse_quote(raw_quote)
        fmspc, issuer = extract_fmspc_and_issuer(quote)

        tcb_info, chain = self.fetch_tcb_info(fmspc, quote.is_tdx)
        qe_identity = self.fetch_qe_identity(quote.is_tdx)
        pck_crl = self.fetch_pck_crl(issuer)
        root_ca_crl = self.fetch_root_ca_crl()

        logger.info(
            "Fetched collateral from Intel PCS for FMSPC %s (%s CA)",
            fmspc, issuer.value,
        )
        return CollateralArtifacts(
            root_ca_crl=root_ca_crl,
            pck_crl=pck_crl,
            tcb_signing_ca=chain[0].public_bytes(serialization.Encoding.DER),
            root_ca=chain[-1].public_bytes(serialization.Encoding.DER),
            tcb_info=tcb_info,
            qe_identity=qe_identity,
        )
