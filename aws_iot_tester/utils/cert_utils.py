"""
Certificate utilities for the AWS IoT test client.
"""
import logging
import subprocess
from pathlib import Path
from typing import Callable, Optional

from .debug_logger import debug_step
from .exceptions import FingerprintError

# Get logger for this module
logger = logging.getLogger(__name__)

FINGERPRINT_MARKER = "Fingerprint="

# Looked up next to the device certificate when no CA path is given
CA_FILE_NAMES = ('AmazonRootCA1.pem', 'root-CA.crt', 'awsRootCA.crt', 'root.pem')


def openssl_fingerprint_command(cert_path: str) -> list:
    return ['openssl', 'x509', '-noout', '-fingerprint', '-sha256', '-inform', 'pem', '-in', str(cert_path)]


def run_openssl_fingerprint(cert_path: str) -> str:
    """
    Run openssl against a certificate and return its fingerprint output.

    Raises:
        FingerprintError: openssl is missing or exits with an error
    """
    command = openssl_fingerprint_command(cert_path)
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=True)
    except FileNotFoundError as e:
        raise FingerprintError(f"openssl not found: {str(e)}") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or '').strip()
        raise FingerprintError(f"Error executing OpenSSL command: {stderr or e}") from e
    return result.stdout


def parse_fingerprint(output: str) -> str:
    """
    Extract the fingerprint from openssl output.

    ``sha256 Fingerprint=B1:14:32:...`` becomes ``b11432...``.

    Raises:
        FingerprintError: the output has no fingerprint value
    """
    if output is None:
        raise FingerprintError("Failed to extract fingerprint from OpenSSL output")
    if isinstance(output, bytes):
        output = output.decode('utf-8', errors='replace')

    for line in output.strip().splitlines():
        if FINGERPRINT_MARKER not in line:
            continue
        value = line.split(FINGERPRINT_MARKER, 1)[1].strip()
        fingerprint = value.replace(':', '').lower()
        if fingerprint and all(c in '0123456789abcdef' for c in fingerprint):
            return fingerprint
        break

    raise FingerprintError("Failed to extract fingerprint from OpenSSL output")


@debug_step("Generating certificate id")
def generate_certificate_id(cert_path: str, runner: Optional[Callable[[str], str]] = None) -> str:
    """
    Compute the certificate id (lowercase SHA-256 fingerprint) of a certificate.

    Args:
        cert_path: Path to the PEM certificate
        runner: Callable returning the fingerprint command output for a path

    Returns:
        str: The certificate id
    """
    runner = runner or run_openssl_fingerprint
    try:
        output = runner(str(cert_path))
    except FingerprintError:
        raise
    except Exception as e:
        raise FingerprintError(f"Error executing OpenSSL command: {str(e)}") from e
    return parse_fingerprint(output)


def find_ca_path(cert_path: str) -> Optional[str]:
    """Find a root CA file in the directory of the device certificate."""
    cert_dir = Path(cert_path).parent
    for name in CA_FILE_NAMES:
        candidate = cert_dir / name
        if candidate.exists():
            logger.debug(f"Found root CA at {candidate}")
            return str(candidate)
    logger.debug(f"No root CA found in {cert_dir}")
    return None
