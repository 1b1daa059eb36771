"""Data models for certificate records and manual challenges."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, PrivateAttr

CERT_PATH_PREFIX = "/certs/"

RECORD_TYPE_ADMIN = "admin"
RECORD_TYPE_USER = "user"


def path_from_host(hostname: str) -> str:
    """Map a hostname to its store path."""
    return CERT_PATH_PREFIX + hostname.encode("utf-8").hex()


def host_from_path(path: str) -> str:
    """Map a store path back to its hostname.

    Returns an empty string if the path was not produced by path_from_host.
    """
    if not path.startswith(CERT_PATH_PREFIX):
        return ""
    try:
        return bytes.fromhex(path[len(CERT_PATH_PREFIX):]).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return ""


class AuthorizationState(BaseModel):
    """Serialized ACME authorization resource."""
    uri: str
    body: str  # JSON of the authorization body


class ManualChallenge(BaseModel):
    """In-flight manual (DNS-01) challenge.

    Holds the operator instructions plus everything needed to resume the
    ACME order once the DNS record has been published.
    """
    message: str
    challenge: str  # JSON of the challenge body
    order: str  # JSON of the order body
    order_uri: str
    authorizations: List[AuthorizationState] = Field(default_factory=list)

    def instructions(self) -> str:
        return self.message


class CertificateRecord(BaseModel):
    """One tracked hostname and its issued material."""
    source: str = ""
    type: str = ""
    ca: str = ""
    certificate: str = ""
    private_key: str = ""
    challenge: Optional[ManualChallenge] = None

    # Set by the store on load, never serialized
    _path: str = PrivateAttr(default="")
    _created_at: Optional[datetime] = PrivateAttr(default=None)

    @property
    def path(self) -> str:
        return self._path

    @property
    def created_at(self) -> Optional[datetime]:
        return self._created_at

    @property
    def hostname(self) -> str:
        return host_from_path(self._path)

    def bind(self, path: str, created_at: Optional[datetime]) -> "CertificateRecord":
        """Attach store metadata after a load."""
        self._path = path
        self._created_at = created_at
        return self

    def is_issued(self) -> bool:
        return bool(self.certificate.strip())

    def has_pending_challenge(self) -> bool:
        return self.challenge is not None


class CertificateSummary(BaseModel):
    """Operator-facing view of a record."""
    hostname: str
    path: str
    source: str
    type: str
    days_remaining: int = -1
    can_delete: bool = False
    can_manual: bool = False
    challenge_message: Optional[str] = None
