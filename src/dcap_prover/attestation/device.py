"""
Attestation report acquisition.

Normalizes the ways a TDX guest can obtain a DCAP quote into one result
shape (AcquiredReport):

- configfs-tsm (Linux 6.7+): /sys/kernel/config/tsm/report/<entry>/{inblob,outblob}
- legacy /dev/tdx_guest: TDX_CMD_GET_REPORT0 + TDX_CMD_GET_QUOTE ioctls
- Azure vTPM: the HCL report in NV index 0x01400001 embeds a TD report,
  which the instance metadata service converts into a quote
- mock: canned bytes, for tests and offline use

Usage:
    from dcap_prover.attestation.device import acquire

    report = acquire(DeviceKind.CONFIGFS)
    # report.report is the raw quote, report.report_data the bound nonce
"""

import ctypes
import fcntl
import logging
import os
import struct
import subprocess
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import requests

from .types import (
    REPORT_DATA_SIZE,
    AcquiredReport,
    AttestationError,
    DeviceKind,
    FirmwareError,
    InvalidRequestError,
    IOFailureError,
    PermissionDeniedError,
    TpmError,
    UnknownError,
)
from .utils import b64url_decode, b64url_encode, generate_report_data

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_CONFIGFS_PATH = "/sys/kernel/config/tsm/report"
DEFAULT_LEGACY_DEVICE_PATH = "/dev/tdx_guest"
DEFAULT_TPM_NV_INDEX = 0x01400001
DEFAULT_METADATA_SERVICE_URL = "http://169.254.169.254/acc/tdquote"

TD_REPORT_SIZE = 1024

# Linux TDX guest ioctls
TDX_CMD_GET_REPORT0 = 0xC4405401  # _IOWR('T', 1, struct tdx_report_req)
TDX_CMD_GET_QUOTE = 0x80105402  # _IOR('T', 2, struct tdx_quote_req)

# GHCI GetQuote shared buffer
GET_QUOTE_BUFFER_SIZE = 8 * 4096
GET_QUOTE_HEADER_VERSION = 1
GET_QUOTE_SUCCESS = 0
GET_QUOTE_IN_FLIGHT = 0xFFFFFFFFFFFFFFFF
GET_QUOTE_HEADER = struct.Struct("<QQII")  # version, status, in_len, out_len

# QGS message framing inside the GetQuote buffer
QGS_MSG_MAJOR_VERSION = 1
QGS_MSG_MINOR_VERSION = 0
QGS_MSG_GET_QUOTE_REQ = 0
QGS_MSG_GET_QUOTE_RESP = 1
QGS_MSG_HEADER = struct.Struct("<HHIII")  # major, minor, type, size, error_code
QGS_MSG_SIZE_PREFIX = struct.Struct(">I")

# Azure HCL report layout
HCL_HEADER_SIZE = 32
HCL_HW_REPORT_SIZE = 1184
HCL_RUNTIME_DATA_OFFSET = HCL_HEADER_SIZE + HCL_HW_REPORT_SIZE
HCL_RUNTIME_HEADER = struct.Struct("<IIIII")  # data_size, version, report_type, hash_type, variable_data_size
HCL_REPORT_TYPE_TDX = 4


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class DeviceConfig:
    """
    Device and transport settings for report acquisition.

    All fields have defaults matching the standard Linux and Azure paths.
    """
    configfs_path: str = DEFAULT_CONFIGFS_PATH
    legacy_device_path: str = DEFAULT_LEGACY_DEVICE_PATH
    tpm_nv_index: int = DEFAULT_TPM_NV_INDEX
    tpm2_nvread: str = "tpm2_nvread"
    metadata_service_url: str = DEFAULT_METADATA_SERVICE_URL
    http_timeout: Optional[float] = None


_DEFAULT_CONFIG = DeviceConfig()


@dataclass(frozen=True)
class DeviceReport:
    """Raw output of a device backend, before normalization."""
    report: bytes
    var_data: Optional[bytes] = None


@contextmanager
def _device_errors(what: str):
    """Map OS-level failures onto the acquisition error taxonomy."""
    try:
        yield
    except AttestationError:
        raise
    except PermissionError as e:
        raise PermissionDeniedError(f"{what}: {e}") from e
    except OSError as e:
        raise FirmwareError(f"{what}: {e}") from e


# =============================================================================
# Device backends
# =============================================================================

class DeviceBackend(ABC):
    """One attestation device path."""

    kind: DeviceKind

    @abstractmethod
    def get_report(self, report_data: Optional[bytes]) -> DeviceReport:
        """
        Request a report binding `report_data`.

        For TPM backends `report_data` is always None and the returned
        report is a TD report rather than a quote.
        """


class ConfigFsDevice(DeviceBackend):
    """Quote generation through the configfs-tsm report interface."""

    kind = DeviceKind.CONFIGFS

    def __init__(self, path: str = DEFAULT_CONFIGFS_PATH):
        self.path = Path(path)

    def get_report(self, report_data: Optional[bytes]) -> DeviceReport:
        entry = self.path / f"dcap-prover-{os.getpid()}-{uuid.uuid4().hex}"

        with _device_errors(f"configfs-tsm entry {entry}"):
            entry.mkdir()
            try:
                (entry / "inblob").write_bytes(report_data or bytes(REPORT_DATA_SIZE))
                quote = (entry / "outblob").read_bytes()
            finally:
                try:
                    entry.rmdir()
                except OSError as e:
                    logger.warning("Failed to remove configfs-tsm entry %s: %s", entry, e)

        if not quote:
            raise FirmwareError("configfs-tsm returned an empty quote")
        logger.debug("configfs-tsm returned a %d byte quote", len(quote))
        return DeviceReport(report=quote)


class _TdxReportReq(ctypes.Structure):
    _fields_ = [
        ("reportdata", ctypes.c_uint8 * REPORT_DATA_SIZE),
        ("tdreport", ctypes.c_uint8 * TD_REPORT_SIZE),
    ]


class _TdxQuoteReq(ctypes.Structure):
    _fields_ = [
        ("buf", ctypes.c_uint64),
        ("len", ctypes.c_uint64),
    ]


def _build_qgs_get_quote_request(td_report: bytes) -> bytes:
    """Frame a TD report as a size-prefixed QGS GET_QUOTE request."""
    body = struct.pack("<II", len(td_report), 0) + td_report
    header = QGS_MSG_HEADER.pack(
        QGS_MSG_MAJOR_VERSION,
        QGS_MSG_MINOR_VERSION,
        QGS_MSG_GET_QUOTE_REQ,
        QGS_MSG_HEADER.size + len(body),
        0,
    )
    message = header + body
    return QGS_MSG_SIZE_PREFIX.pack(len(message)) + message


def _parse_qgs_get_quote_response(data: bytes) -> bytes:
    """Extract the quote from a size-prefixed QGS GET_QUOTE response."""
    min_size = QGS_MSG_SIZE_PREFIX.size + QGS_MSG_HEADER.size + 8
    if len(data) < min_size:
        raise FirmwareError(f"QGS response too short: {len(data)} bytes")

    (msg_size,) = QGS_MSG_SIZE_PREFIX.unpack_from(data, 0)
    offset = QGS_MSG_SIZE_PREFIX.size
    major, _, msg_type, _, error_code = QGS_MSG_HEADER.unpack_from(data, offset)
    if major != QGS_MSG_MAJOR_VERSION or msg_type != QGS_MSG_GET_QUOTE_RESP:
        raise FirmwareError(f"Unexpected QGS message (version {major}, type {msg_type})")
    if error_code != 0:
        raise FirmwareError(f"QGS returned error code 0x{error_code:x}")
    offset += QGS_MSG_HEADER.size

    selected_id_size, quote_size = struct.unpack_from("<II", data, offset)
    offset += 8 + selected_id_size
    if offset + quote_size > QGS_MSG_SIZE_PREFIX.size + msg_size or offset + quote_size > len(data):
        raise FirmwareError("QGS response quote exceeds message size")
    return data[offset:offset + quote_size]


class LegacyDevice(DeviceBackend):
    """Quote generation through the /dev/tdx_guest ioctl interface."""

    kind = DeviceKind.LEGACY

    def __init__(self, path: str = DEFAULT_LEGACY_DEVICE_PATH):
        self.path = path

    def get_report(self, report_data: Optional[bytes]) -> DeviceReport:
        with _device_errors(f"TDX guest device {self.path}"):
            fd = os.open(self.path, os.O_RDWR)
            try:
                td_report = self._get_td_report(fd, report_data or bytes(REPORT_DATA_SIZE))
                quote = self._get_quote(fd, td_report)
            finally:
                os.close(fd)

        logger.debug("%s returned a %d byte quote", self.path, len(quote))
        return DeviceReport(report=quote)

    @staticmethod
    def _get_td_report(fd: int, report_data: bytes) -> bytes:
        req = _TdxReportReq()
        ctypes.memmove(req.reportdata, report_data, REPORT_DATA_SIZE)
        fcntl.ioctl(fd, TDX_CMD_GET_REPORT0, req)
        return bytes(req.tdreport)

    @staticmethod
    def _get_quote(fd: int, td_report: bytes) -> bytes:
        request = _build_qgs_get_quote_request(td_report)
        buf = ctypes.create_string_buffer(GET_QUOTE_BUFFER_SIZE)
        GET_QUOTE_HEADER.pack_into(buf, 0, GET_QUOTE_HEADER_VERSION, 0, len(request), 0)
        ctypes.memmove(ctypes.addressof(buf) + GET_QUOTE_HEADER.size, request, len(request))

        req = _TdxQuoteReq(buf=ctypes.addressof(buf), len=GET_QUOTE_BUFFER_SIZE)
        fcntl.ioctl(fd, TDX_CMD_GET_QUOTE, req)

        _, status, _, out_len = GET_QUOTE_HEADER.unpack_from(buf, 0)
        if status == GET_QUOTE_IN_FLIGHT:
            raise FirmwareError("GetQuote request still in flight")
        if status != GET_QUOTE_SUCCESS:
            raise FirmwareError(f"GetQuote failed with status 0x{status:x}")
        if out_len == 0 or out_len > GET_QUOTE_BUFFER_SIZE - GET_QUOTE_HEADER.size:
            raise FirmwareError(f"GetQuote returned invalid length {out_len}")

        start = GET_QUOTE_HEADER.size
        return _parse_qgs_get_quote_response(buf.raw[start:start + out_len])


def parse_hcl_report(hcl_report: bytes) -> DeviceReport:
    """
    Split an Azure HCL report into its TD report and variable data.

    Layout:
        - header: 32 bytes
        - hardware report: 1184 bytes (TD report in the first 1024)
        - runtime data header: data_size, version, report_type, hash_type,
          variable_data_size (u32 each)
        - variable data: runtime claims JSON

    Raises:
        TpmError: If the report is truncated or not a TDX HCL report
    """
    header_end = HCL_RUNTIME_DATA_OFFSET + HCL_RUNTIME_HEADER.size
    if len(hcl_report) < header_end:
        raise TpmError(f"HCL report too short: {len(hcl_report)} bytes")

    _, _, report_type, _, var_size = HCL_RUNTIME_HEADER.unpack_from(
        hcl_report, HCL_RUNTIME_DATA_OFFSET
    )
    if report_type != HCL_REPORT_TYPE_TDX:
        raise TpmError(f"HCL report type {report_type} is not TDX")
    if len(hcl_report) < header_end + var_size:
        raise TpmError("HCL report variable data is truncated")

    td_report = hcl_report[HCL_HEADER_SIZE:HCL_HEADER_SIZE + TD_REPORT_SIZE]
    var_data = hcl_report[header_end:header_end + var_size]
    return DeviceReport(report=td_report, var_data=var_data)


class TpmDevice(DeviceBackend):
    """Azure confidential VM vTPM: reads the HCL report from NV storage."""

    kind = DeviceKind.TPM

    def __init__(self, nv_index: int = DEFAULT_TPM_NV_INDEX, tpm2_nvread: str = "tpm2_nvread"):
        self.nv_index = nv_index
        self.tpm2_nvread = tpm2_nvread

    def get_report(self, report_data: Optional[bytes]) -> DeviceReport:
        cmd = [self.tpm2_nvread, "-C", "o", f"0x{self.nv_index:08x}"]
        try:
            result = subprocess.run(cmd, capture_output=True, check=True)
        except FileNotFoundError as e:
            raise TpmError(f"{self.tpm2_nvread} not found: {e}") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b"").decode("utf-8", errors="replace").strip()
            raise TpmError(f"Reading NV index 0x{self.nv_index:08x} failed: {stderr}") from e
        except PermissionError as e:
            raise PermissionDeniedError(f"Cannot run {self.tpm2_nvread}: {e}") from e

        return parse_hcl_report(result.stdout)


class MockDevice(DeviceBackend):
    """Returns canned report bytes; records the report data it was given."""

    kind = DeviceKind.MOCK

    def __init__(self, report: bytes, var_data: Optional[bytes] = None):
        self.report = report
        self.var_data = var_data
        self.requests = []

    def get_report(self, report_data: Optional[bytes]) -> DeviceReport:
        self.requests.append(report_data)
        return DeviceReport(report=self.report, var_data=self.var_data)


# =============================================================================
# Detection
# =============================================================================

def detect_device_kind(config: Optional[DeviceConfig] = None) -> DeviceKind:
    """
    Probe for an attestation device: configfs-tsm, then legacy, then TPM.

    Raises:
        FirmwareError: If no device is available
    """
    config = config or _DEFAULT_CONFIG
    if Path(config.configfs_path).is_dir():
        return DeviceKind.CONFIGFS
    if os.path.exists(config.legacy_device_path):
        return DeviceKind.LEGACY
    if os.path.exists("/dev/tpmrm0") or os.path.exists("/dev/tpm0"):
        return DeviceKind.TPM
    raise FirmwareError("No TDX attestation device found")


def create_backend(kind: DeviceKind, config: Optional[DeviceConfig] = None) -> DeviceBackend:
    config = config or _DEFAULT_CONFIG
    if kind == DeviceKind.CONFIGFS:
        return ConfigFsDevice(config.configfs_path)
    if kind == DeviceKind.LEGACY:
        return LegacyDevice(config.legacy_device_path)
    if kind == DeviceKind.TPM:
        return TpmDevice(config.tpm_nv_index, config.tpm2_nvread)
    raise InvalidRequestError(f"No default backend for device kind {kind.value!r}")


# =============================================================================
# Acquirer
# =============================================================================

class ReportAcquirer:
    """
    Acquires attestation reports and normalizes them to AcquiredReport.

    Holds no per-call state; every acquire() is independent. A metadata
    service session is only opened for TPM acquisition, and close() (or
    leaving a `with` block) closes it unless it was supplied by the caller.

    Args:
        config: Device paths and metadata-service settings
        session: requests session for the metadata service
        backends: Per-kind backend overrides (e.g. a MockDevice)
    """

    def __init__(
        self,
        config: Optional[DeviceConfig] = None,
        session: Optional[requests.Session] = None,
        backends: Optional[Dict[DeviceKind, DeviceBackend]] = None,
    ):
        self.config = config or _DEFAULT_CONFIG
        self._session = session
        self._owns_session = session is None
        self.backends = dict(backends or {})

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def close(self) -> None:
        """Close the metadata service session if this acquirer opened it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "ReportAcquirer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _backend(self, kind: DeviceKind) -> DeviceBackend:
        backend = self.backends.get(kind)
        if backend is None:
            backend = create_backend(kind, self.config)
        return backend

    def acquire(
        self,
        device_kind: Optional[DeviceKind] = None,
        report_data: Optional[bytes] = None,
    ) -> AcquiredReport:
        """
        Acquire a quote from an attestation device.

        Args:
            device_kind: Device to use; probed with detect_device_kind() if None
            report_data: 64 bytes to bind into the quote. Random bytes are
                used if None. Must be None for TPM, whose HCL binds its own.

        Returns:
            AcquiredReport with the raw quote

        Raises:
            InvalidRequestError: If report_data is invalid for the device
            FirmwareError, IOFailureError, PermissionDeniedError, TpmError,
            UnknownError: If acquisition fails
        """
        if device_kind is None:
            device_kind = detect_device_kind(self.config)

        if device_kind == DeviceKind.TPM:
            if report_data is not None:
                raise InvalidRequestError("report_data cannot be provided for TPM")
        elif report_data is None:
            report_data = generate_report_data()
        elif len(report_data) != REPORT_DATA_SIZE:
            raise InvalidRequestError(
                f"report_data must be {REPORT_DATA_SIZE} bytes, got {len(report_data)}"
            )

        backend = self._backend(device_kind)
        try:
            response = backend.get_report(report_data)
        except AttestationError:
            raise
        except Exception as e:
            raise UnknownError(f"{device_kind.value} device failed: {e}") from e

        report = response.report
        if device_kind == DeviceKind.TPM:
            report = self._quote_from_td_report(response.report)

        logger.info("Acquired %d byte report from %s device", len(report), device_kind.value)
        return AcquiredReport(
            report=report,
            var_data=response.var_data,
            report_data=report_data,
            device_kind=device_kind,
        )

    def _quote_from_td_report(self, td_report: bytes) -> bytes:
        """
        Convert a TD report into a signed quote via the metadata service.

        Raises:
            IOFailureError: On transport failure, a non-JSON reply, a missing
                `quote` field, or a field that is not base64url
        """
        url = self.config.metadata_service_url
        logger.debug("Requesting quote for TD report from %s", url)
        try:
            response = self.session.post(
                url,
                json={"report": b64url_encode(td_report)},
                timeout=self.config.http_timeout,
            )
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise IOFailureError(f"Metadata service request failed: {e}") from e

        quote_text = body.get("quote") if isinstance(body, dict) else None
        if not isinstance(quote_text, str):
            raise IOFailureError("Metadata service response has no 'quote' field")
        try:
            return b64url_decode(quote_text)
        except ValueError as e:
            raise IOFailureError(f"Metadata service returned an undecodable quote: {e}") from e


def acquire(
    device_kind: Optional[DeviceKind] = None,
    report_data: Optional[bytes] = None,
    config: Optional[DeviceConfig] = None,
) -> AcquiredReport:
    """Acquire a quote with a default ReportAcquirer."""
    with ReportAcquirer(config) as acquirer:
        return acquirer.acquire(device_kind, report_data)
