"""Certificate sources.

A source knows how to turn a hostname and a private key into a certificate
chain. Every configured source is built once at startup and looked up by name.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .config import SOURCE_TYPE_ACME, SOURCE_TYPE_SELF_SIGNED, SourceConfig
from .errors import ConfigurationError, IssuanceError
from .models import ManualChallenge
from .responder import ChallengeResponder

logger = logging.getLogger(__name__)


def check_deadline(deadline: datetime, step: str) -> None:
    """Stop an operation whose deadline has passed before its next step."""
    if datetime.now() >= deadline:
        raise IssuanceError(f"deadline passed before {step}")


class CertSource(ABC):
    """Issuer of certificates for single hostnames."""

    def __init__(self, name: str):
        self.name = name
        # Only one issuance flow per source at a time
        self.lock = threading.Lock()

    @contextmanager
    def locked(self, deadline: datetime) -> Iterator[None]:
        """Hold the source lock, giving up once the deadline passes."""
        remaining = (deadline - datetime.now()).total_seconds()
        if remaining <= 0 or not self.lock.acquire(timeout=remaining):
            raise IssuanceError(f"{self.name}: timed out waiting for source")
        try:
            yield
        finally:
            self.lock.release()

    @abstractmethod
    def auto_fetch_cert(self, deadline: datetime, private_key: rsa.RSAPrivateKey,
                        hostname: str) -> List[x509.Certificate]:
        """Fetch a certificate now without operator involvement."""

    @abstractmethod
    def manual_start_challenge(self, deadline: datetime, hostname: str) -> ManualChallenge:
        """Begin an order that needs the operator to act before completion."""

    @abstractmethod
    def complete_challenge(self, deadline: datetime, private_key: rsa.RSAPrivateKey,
                           hostname: str, challenge: ManualChallenge) -> List[x509.Certificate]:
        """Finish a previously started manual order and issue the certificate."""

    @abstractmethod
    def supports_manual(self) -> bool:
        """Whether the manual challenge operations are available."""


class SelfSignedSource(CertSource):
    """Locally signed certificates, no external calls."""

    def __init__(self, name: str, days: int = 365):
        super().__init__(name)
        self.days = days

    def auto_fetch_cert(self, deadline, private_key, hostname):
        with self.locked(deadline):
            logger.info(f"Generating self-signed certificate for {hostname}")
            now = datetime.now(timezone.utc)
            try:
                subject = issuer = x509.Name([
                    x509.NameAttribute(NameOID.COMMON_NAME, hostname),
                ])
                cert = x509.CertificateBuilder().subject_name(
                    subject
                ).issuer_name(
                    issuer
                ).public_key(
                    private_key.public_key()
                ).serial_number(
                    x509.random_serial_number()
                ).not_valid_before(
                    now - timedelta(minutes=5)
                ).not_valid_after(
                    now + timedelta(days=self.days)
                ).add_extension(
                    x509.SubjectAlternativeName([x509.DNSName(hostname)]),
                    critical=False
                ).sign(private_key, hashes.SHA256())
            except ValueError as e:
                raise IssuanceError(f"cannot sign certificate for {hostname!r}: {e}") from e
            return [cert]

    def manual_start_challenge(self, deadline, hostname):
        raise IssuanceError(f"source {self.name} does not support manual challenges")

    def complete_challenge(self, deadline, private_key, hostname, challenge):
        raise IssuanceError(f"source {self.name} does not support manual challenges")

    def supports_manual(self) -> bool:
        return False


def _build_self_signed(name: str, conf: SourceConfig, responder: ChallengeResponder) -> CertSource:
    return SelfSignedSource(name, days=conf.days)


def _build_acme(name: str, conf: SourceConfig, responder: ChallengeResponder) -> CertSource:
    from .acme_source import AcmeCertSource

    if not conf.url:
        raise ConfigurationError(f"source {name}: acme directory url must be specified")
    return AcmeCertSource(
        name,
        directory_url=conf.url,
        email=conf.email,
        account_key_pem=conf.private_key,
        responder=responder,
    )


SOURCE_BUILDERS = {
    SOURCE_TYPE_SELF_SIGNED: _build_self_signed,
    SOURCE_TYPE_ACME: _build_acme,
}


def build_source(name: str, conf: SourceConfig, responder: ChallengeResponder) -> CertSource:
    """Build a single source from its configuration."""
    builder = SOURCE_BUILDERS.get(conf.type)
    if builder is None:
        raise ConfigurationError(f"unknown cert source type: {conf.type}")
    return builder(name, conf, responder)


def build_sources(configs: Dict[str, SourceConfig], responder: ChallengeResponder) -> Dict[str, CertSource]:
    """Build the source registry from configuration."""
    sources = {}
    for name, conf in configs.items():
        sources[name] = build_source(name, conf, responder)
    if not sources:
        raise ConfigurationError("must specify at least one cert source")
    return sources
