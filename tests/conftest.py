"""Pytest configuration and shared fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from le_responder.certutil import certificate_to_pem, generate_private_key, private_key_to_pem
from le_responder.config import BootstrapConfig, DaemonSettings
from le_responder.daemon import RenewalDaemon
from le_responder.errors import IssuanceError, NotFoundError
from le_responder.models import CertificateRecord, ManualChallenge, path_from_host
from le_responder.sources import CertSource, SelfSignedSource
from le_responder.storage import CertificateStore

OUR_HOSTNAME = "admin.example.com"


@pytest.fixture(scope="session")
def signing_key():
    """One RSA key shared by every generated test certificate."""
    return generate_private_key()


def make_certificate(key, hostname: str, not_after: datetime,
                     not_before: Optional[datetime] = None) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    not_before = not_before or min(not_after, datetime.now(timezone.utc)) - timedelta(days=30)
    return x509.CertificateBuilder().subject_name(
        name
    ).issuer_name(
        name
    ).public_key(
        key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        not_before
    ).not_valid_after(
        not_after
    ).sign(key, hashes.SHA256())


@pytest.fixture
def cert_factory(signing_key):
    """Build a PEM certificate expiring the given number of days from now."""
    def factory(hostname: str = "www.example.com", days: float = 90) -> str:
        expires = datetime.now(timezone.utc) + timedelta(days=days)
        return certificate_to_pem(make_certificate(signing_key, hostname, expires))
    return factory


@pytest.fixture
def record_factory(signing_key, cert_factory):
    """Build an issued record for hostname."""
    def factory(hostname: str = "www.example.com", days: float = 90, source: str = "selfsigned",
                challenge: Optional[ManualChallenge] = None) -> CertificateRecord:
        return CertificateRecord(
            source=source,
            type="user",
            certificate=cert_factory(hostname, days),
            private_key=private_key_to_pem(signing_key),
            challenge=challenge,
        ).bind(path_from_host(hostname), datetime.now(timezone.utc))
    return factory


class FakeStore(CertificateStore):
    """In-memory store. Set `error` to make every call fail with it."""

    def __init__(self):
        self.data: Dict[str, Tuple[str, datetime]] = {}
        self.error: Optional[Exception] = None

    def _check(self):
        if self.error is not None:
            raise self.error

    async def list_paths(self) -> List[str]:
        self._check()
        return sorted(self.data)

    async def fetch_all(self):
        return [await self.load(path) for path in await self.list_paths()]

    async def load(self, path):
        self._check()
        if path not in self.data:
            raise NotFoundError(path)
        value, created_at = self.data[path]
        return CertificateRecord.model_validate_json(value).bind(path, created_at)

    async def save(self, path, record):
        self._check()
        created_at = datetime.now(timezone.utc)
        self.data[path] = (record.model_dump_json(), created_at)
        record.bind(path, created_at)

    async def delete(self, path):
        self._check()
        self.data.pop(path, None)

    async def put(self, hostname: str, record: CertificateRecord):
        """Seed a record directly."""
        await self.save(path_from_host(hostname), record)


class RecordingSource(SelfSignedSource):
    """Self-signed source that remembers calls and can be told to fail per host."""

    def __init__(self, name: str = "selfsigned", manual: bool = False):
        super().__init__(name, days=90)
        self.manual = manual
        self.calls: List[str] = []
        self.failing_hosts = set()

    def auto_fetch_cert(self, deadline, private_key, hostname):
        self.calls.append(hostname)
        if hostname in self.failing_hosts:
            raise IssuanceError(f"refusing to issue for {hostname}")
        return super().auto_fetch_cert(deadline, private_key, hostname)

    def manual_start_challenge(self, deadline, hostname):
        if not self.manual:
            return super().manual_start_challenge(deadline, hostname)
        return ManualChallenge(
            message=f"Create DNS TXT record:\nName:  _acme-challenge.{hostname}.\nValue: abc",
            challenge="{}",
            order="{}",
            order_uri="https://acme.test/order/1",
        )

    def complete_challenge(self, deadline, private_key, hostname, challenge):
        if not self.manual:
            return super().complete_challenge(deadline, private_key, hostname, challenge)
        return SelfSignedSource.auto_fetch_cert(self, deadline, private_key, hostname)

    def supports_manual(self) -> bool:
        return self.manual


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def source() -> RecordingSource:
    return RecordingSource()


@pytest.fixture
def manual_source() -> RecordingSource:
    return RecordingSource("dns", manual=True)


@pytest.fixture
def settings() -> DaemonSettings:
    return DaemonSettings(days_before=30, period=3600, bootstrap=BootstrapConfig(source="selfsigned"))


@pytest.fixture
def daemon(settings, source, manual_source, store) -> RenewalDaemon:
    sources: Dict[str, CertSource] = {source.name: source, manual_source.name: manual_source}
    return RenewalDaemon(settings, OUR_HOSTNAME, sources, store, [], publish_quiet_period=0.05)
