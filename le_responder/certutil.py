"""Key generation and PEM helpers."""

import re
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .errors import IssuanceError, ParseError

RSA_KEY_SIZE = 2048

PEM_CERTIFICATE = "CERTIFICATE"
PEM_RSA_PRIVATE_KEY = "RSA PRIVATE KEY"

_PEM_BLOCK = re.compile(
    r"-----BEGIN (?P<type>[A-Z0-9 ]+)-----\r?\n(?P<body>.*?)-----END (?P=type)-----",
    re.DOTALL,
)


def generate_private_key(key_size: int = RSA_KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate RSA key pair."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Encode a key as an RSA PRIVATE KEY (PKCS#1) block."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption()
    ).decode('utf-8')


def certificate_to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode('utf-8')


def _first_block(pem: str, expected_type: str) -> str:
    """Return the first PEM block, requiring its type and no headers."""
    match = _PEM_BLOCK.search(pem or "")
    if not match:
        raise ParseError(f"no {expected_type.lower()} found in pem")
    if match.group("type") != expected_type or ":" in match.group("body"):
        raise ParseError(f"invalid {expected_type.lower()} found in pem")
    return match.group(0)


def load_rsa_private_key(pem: str) -> rsa.RSAPrivateKey:
    """Load an RSA PRIVATE KEY block."""
    block = _first_block(pem, PEM_RSA_PRIVATE_KEY)
    try:
        key = serialization.load_pem_private_key(block.encode('utf-8'), password=None)
    except ValueError as e:
        raise ParseError(f"cannot parse private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ParseError("private key is not an RSA key")
    return key


def parse_certificate_pem(pem: str) -> x509.Certificate:
    """Parse the first CERTIFICATE block of a PEM string."""
    block = _first_block(pem, PEM_CERTIFICATE)
    try:
        return x509.load_pem_x509_certificate(block.encode('utf-8'))
    except ValueError as e:
        raise ParseError(f"cannot parse certificate: {e}") from e


def split_pem_chain(fullchain_pem: str) -> List[x509.Certificate]:
    """Split a full chain into leaf followed by intermediates."""
    chain = []
    for match in _PEM_BLOCK.finditer(fullchain_pem or ""):
        if match.group("type") != PEM_CERTIFICATE:
            raise ParseError(f"unexpected {match.group('type')} block in certificate chain")
        try:
            chain.append(x509.load_pem_x509_certificate(match.group(0).encode('utf-8')))
        except ValueError as e:
            raise ParseError(f"cannot parse certificate chain: {e}") from e
    return chain


def encode_chain(chain: Sequence[x509.Certificate]) -> Tuple[str, str]:
    """PEM-encode a chain as (leaf, concatenated intermediates)."""
    if not chain:
        raise ParseError("no certs returned")
    leaf = certificate_to_pem(chain[0])
    roots = "".join(certificate_to_pem(c) for c in chain[1:])
    return leaf, roots


def create_csr(private_key: rsa.RSAPrivateKey, hostname: str) -> bytes:
    """Create Certificate Signing Request in PEM format."""
    try:
        builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name([
            x509.NameAttribute(NameOID.COMMON_NAME, hostname)
        ])).add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]),
            critical=False
        )
        csr = builder.sign(private_key, hashes.SHA256())
    except ValueError as e:
        raise IssuanceError(f"cannot create csr for {hostname!r}: {e}") from e
    return csr.public_bytes(serialization.Encoding.PEM)


def not_after(certificate: x509.Certificate) -> datetime:
    return certificate.not_valid_after_utc


def days_remaining(certificate: x509.Certificate, now: Optional[datetime] = None) -> int:
    now = now or datetime.now(timezone.utc)
    return int((not_after(certificate) - now).total_seconds() / 86400)
