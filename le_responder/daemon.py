"""Renewal daemon.

Owns the list of tracked hosts, decides which of them need a new certificate,
drives the configured certificate sources and tells observers about changes.

Two tasks run for the lifetime of the daemon:

* the periodic scan, which walks every tracked host once per period, and
* the publish trigger, which waits for a quiet period after certificates
  change and then hands the full certificate set to every observer.

They only talk to each other through the trigger's signal queue and the store.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from .certutil import (
    days_remaining, encode_chain, generate_private_key, not_after,
    parse_certificate_pem, private_key_to_pem
)
from .config import DaemonSettings
from .debounce import DebouncedTrigger
from .errors import (
    ChallengeStateError, ConfigurationError, IssuanceError, NotFoundError,
    ObserverError, ParseError, is_comms_error
)
from .models import (
    RECORD_TYPE_ADMIN, RECORD_TYPE_USER, CertificateRecord, CertificateSummary,
    host_from_path, path_from_host
)
from .observers import CertObserver
from .sources import CertSource
from .storage import CertificateStore

logger = logging.getLogger(__name__)

BOOTSTRAP_HOSTNAME = "proxy-bootstrap"

OPERATION_TIMEOUT = 60
PUBLISH_QUIET_PERIOD = 30
PUBLISH_INITIAL_DELAY = 5
BOOTSTRAP_RETRY_SECONDS = 15

Issuer = Callable[[datetime, CertSource, rsa.RSAPrivateKey], List[x509.Certificate]]


class RenewalAction(str, Enum):
    NO_ACTION = "no_action"
    NEEDS_NEW = "needs_new"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class RenewalDecision:
    action: RenewalAction
    source: Optional[str] = None
    reason: str = ""


def renewal_decision(record: Optional[CertificateRecord], now: datetime,
                     days_before: int, bootstrap_source: str) -> RenewalDecision:
    """Decide whether a host needs a new certificate.

    A record that is waiting on a manual challenge, or whose certificate has
    already expired, is never renewed automatically.
    """
    if record is None:
        return RenewalDecision(RenewalAction.NEEDS_NEW, bootstrap_source, "no certificate exists")

    if record.has_pending_challenge():
        return RenewalDecision(
            RenewalAction.BLOCKED, record.source,
            "challenge not empty, we will not try to auto renew, please use console to do manually"
        )

    if not record.is_issued():
        return RenewalDecision(RenewalAction.NEEDS_NEW, record.source, "certificate not yet issued")

    expires = not_after(parse_certificate_pem(record.certificate))
    if expires < now:
        return RenewalDecision(
            RenewalAction.BLOCKED, record.source,
            "cert already expired, we won't try to auto-renew. do so manually via console"
        )

    if expires < now + timedelta(days=days_before):
        return RenewalDecision(RenewalAction.NEEDS_NEW, record.source, f"expires {expires.isoformat()}")

    return RenewalDecision(RenewalAction.NO_ACTION, record.source)


class RenewalDaemon:
    """Renewal scheduling and issuance orchestration."""

    def __init__(self, settings: DaemonSettings, our_hostname: str,
                 sources: Dict[str, CertSource], storage: CertificateStore,
                 observers: Sequence[CertObserver],
                 operation_timeout: float = OPERATION_TIMEOUT,
                 publish_quiet_period: float = PUBLISH_QUIET_PERIOD,
                 publish_initial_delay: Optional[float] = PUBLISH_INITIAL_DELAY):
        if not settings.period:
            raise ConfigurationError("period must be specified and non-zero. should be in seconds")
        if not settings.days_before:
            raise ConfigurationError("days before must be specified and non-zero. should be in days")
        if not sources:
            raise ConfigurationError("must specify at least one cert source")
        if settings.bootstrap.source not in sources:
            raise ConfigurationError(f"bootstrap source not found: {settings.bootstrap.source!r}")

        self.settings = settings
        self.our_hostname = our_hostname
        self.fixed_hosts = [
            BOOTSTRAP_HOSTNAME,  # do first, in case we take longer
            our_hostname,
        ]
        self.cert_sources = dict(sources)
        self._source_names = sorted(self.cert_sources)
        self.storage = storage
        self.observers = list(observers)
        self.operation_timeout = operation_timeout
        self.error_counts: Counter = Counter()
        self.bootstrapped = False

        self.publish_trigger = DebouncedTrigger(
            "observers", publish_quiet_period, initial_delay=publish_initial_delay
        )
        self.publish_trigger.on_fire(self.update_observers)

    # Queries used by the admin console

    def sources(self) -> List[str]:
        return list(self._source_names)

    def stats(self) -> Dict[str, int]:
        """Error counts by task: scan, renew and observers."""
        return {task: self.error_counts[task] for task in ("scan", "renew", "observers")}

    def source_can_manual(self, source: str) -> bool:
        cert_source = self.cert_sources.get(source)
        if cert_source is None:
            return False
        return cert_source.supports_manual()

    def is_fixed_host(self, hostname: str) -> bool:
        return hostname in self.fixed_hosts

    def can_delete(self, hostname: str) -> bool:
        return not self.is_fixed_host(hostname)

    def ship_to_proxy(self, hostname: str) -> bool:
        return hostname != self.our_hostname

    def _get_source(self, source: str) -> CertSource:
        cert_source = self.cert_sources.get(source)
        if cert_source is None:
            raise IssuanceError(f"no cert source found for: {source}")
        return cert_source

    # Issuance

    async def _run_source(self, func: Callable[[datetime], List[x509.Certificate]]) -> List[x509.Certificate]:
        """Run a blocking source operation bounded by the operation timeout."""
        deadline = datetime.now() + timedelta(seconds=self.operation_timeout)
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, func, deadline),
                self.operation_timeout
            )
        except asyncio.TimeoutError as e:
            raise IssuanceError(f"timed out after {self.operation_timeout}s") from e

    async def _get_cert_and_save(self, hostname: str, source: str, issuer: Issuer) -> CertificateRecord:
        cert_source = self._get_source(source)
        private_key = await asyncio.get_running_loop().run_in_executor(None, generate_private_key)

        chain = await self._run_source(lambda deadline: issuer(deadline, cert_source, private_key))
        leaf_pem, ca_pem = encode_chain(chain)

        record = CertificateRecord(
            source=source,
            type=RECORD_TYPE_USER if self.can_delete(hostname) else RECORD_TYPE_ADMIN,
            ca=ca_pem,
            certificate=leaf_pem,
            private_key=private_key_to_pem(private_key),
        )
        await self.storage.save(path_from_host(hostname), record)
        logger.info(f"Issued new certificate for {hostname} from {source}")

        # yo, we got a cert
        self.publish_trigger.signal()
        return record

    async def renew_cert_now(self, hostname: str, source: str) -> CertificateRecord:
        """Fetch a certificate for hostname from source right away."""
        return await self._get_cert_and_save(
            hostname, source,
            lambda deadline, cert_source, private_key: cert_source.auto_fetch_cert(deadline, private_key, hostname)
        )

    async def start_manual_challenge(self, hostname: str) -> CertificateRecord:
        """Begin a manual challenge and persist its instructions on the record."""
        path = path_from_host(hostname)
        record = await self.storage.load(path)
        cert_source = self._get_source(record.source)

        record.challenge = await self._run_source(
            lambda deadline: cert_source.manual_start_challenge(deadline, hostname)
        )
        await self.storage.save(path, record)
        logger.info(f"Started manual challenge for {hostname}")
        return record

    async def complete_challenge(self, hostname: str) -> CertificateRecord:
        """Finish the pending manual challenge and persist the certificate."""
        record = await self.storage.load(path_from_host(hostname))
        if record.challenge is None:
            raise ChallengeStateError("challenge not set")
        challenge = record.challenge

        return await self._get_cert_and_save(
            hostname, record.source,
            lambda deadline, cert_source, private_key: cert_source.complete_challenge(
                deadline, private_key, hostname, challenge
            )
        )

    async def renew_cert_if_needed(self, hostname: str) -> bool:
        """Renew hostname if its record calls for it. Returns True if renewed."""
        try:
            record: Optional[CertificateRecord] = await self.storage.load(path_from_host(hostname))
        except NotFoundError:
            record = None

        decision = renewal_decision(
            record, datetime.now(timezone.utc),
            self.settings.days_before, self.settings.bootstrap.source
        )
        if decision.action == RenewalAction.BLOCKED:
            raise ChallengeStateError(f"{hostname}: {decision.reason}")
        if decision.action == RenewalAction.NO_ACTION:
            return False

        logger.info(f"Renewing {hostname} using {decision.source}: {decision.reason}")
        await self.renew_cert_now(hostname, decision.source)
        return True

    # Host management used by the admin console

    async def add_host(self, hostname: str, source: str) -> CertificateRecord:
        """Start tracking a hostname. The next scan issues its certificate."""
        hostname = hostname.strip()
        if not hostname:
            raise ValueError("empty hostname")
        if not source:
            raise ValueError("empty source")
        if source not in self.cert_sources:
            raise ValueError(f"unknown source: {source}")

        path = path_from_host(hostname)
        try:
            await self.storage.load(path)
        except NotFoundError:
            pass
        else:
            raise ValueError("already managed")

        record = CertificateRecord(source=source)
        await self.storage.save(path, record)
        logger.info(f"Now tracking {hostname} with source {source}")
        return record

    async def set_source(self, hostname: str, source: str) -> CertificateRecord:
        if not source:
            raise ValueError("empty source")
        if source not in self.cert_sources:
            raise ValueError(f"unknown source: {source}")
        path = path_from_host(hostname)
        record = await self.storage.load(path)
        record.source = source
        await self.storage.save(path, record)
        return record

    async def delete_host(self, hostname: str) -> None:
        if not self.can_delete(hostname):
            raise ValueError("not allowed to delete cert for this server")
        await self.storage.delete(path_from_host(hostname))
        self.publish_trigger.signal()

    async def list_certificates(self) -> List[CertificateSummary]:
        """Summaries of every record, sorted by hostname."""
        now = datetime.now(timezone.utc)
        summaries = []
        for record in await self.storage.fetch_all():
            hostname = record.hostname or f"cannot decode: {record.path}"
            remaining = -1
            if record.is_issued():
                try:
                    remaining = days_remaining(parse_certificate_pem(record.certificate), now)
                except ParseError as e:
                    logger.error(f"Cannot read certificate for {hostname}: {e}")
            summaries.append(CertificateSummary(
                hostname=hostname,
                path=record.path,
                source=record.source,
                type=record.type,
                days_remaining=remaining,
                can_delete=self.can_delete(hostname),
                can_manual=self.source_can_manual(record.source),
                challenge_message=record.challenge.instructions() if record.challenge else None,
            ))
        return sorted(summaries, key=lambda s: s.hostname)

    # Background loops

    async def update_observers(self) -> None:
        """Hand the full certificate set to every observer.

        Every observer is called even if an earlier one fails; any failure is
        reported once all of them have run.
        """
        records = await self.storage.fetch_all()
        last_error: Optional[Exception] = None
        for observer in self.observers:
            try:
                await observer.certs_updated(records)
            except Exception as e:
                logger.error(f"Error updating cert observer {type(observer).__name__}, continuing: {e}")
                self.error_counts["observers"] += 1
                last_error = e
        if last_error is not None:
            raise ObserverError(str(last_error)) from last_error
        logger.info("Updating observers completed successfully.")

    async def periodic_scan(self) -> None:
        """Walk every tracked host once, renewing where needed.

        The store is read first so that we never talk to a CA while storage
        is down. Per-host failures are logged and the last one is re-raised
        after the scan.
        """
        records = await self.storage.fetch_all()
        last_error: Optional[Exception] = None

        hostnames = list(self.fixed_hosts)
        for record in records:
            hostname = host_from_path(record.path)
            if not hostname:
                logger.warning(f"Skipping record with undecodable path: {record.path}")
                continue
            if not self.is_fixed_host(hostname):
                hostnames.append(hostname)

        for hostname in hostnames:
            try:
                await self.renew_cert_if_needed(hostname)
            except Exception as e:
                logger.error(f"Error renewing {hostname}, continuing with others: {e}")
                self.error_counts["renew"] += 1
                last_error = e

        if last_error is not None:
            raise last_error

    async def scan_once(self) -> float:
        """Run one scan and return how long to sleep before the next."""
        next_sleep = float(self.settings.period)
        logger.info("Starting periodic scan...")
        try:
            await self.periodic_scan()
        except Exception as e:
            logger.error(f"Error in periodic scan, ignoring: {e}")
            self.error_counts["scan"] += 1
            if is_comms_error(e) and not self.bootstrapped:
                logger.info("Looks like a comms related issue, we'll reduce our sleep time")
                next_sleep = BOOTSTRAP_RETRY_SECONDS
        else:
            logger.info("Periodic scan finished successfully")
            self.bootstrapped = True
        return next_sleep

    async def scan_forever(self) -> None:
        while True:
            next_sleep = await self.scan_once()
            logger.info(f"Sleeping for {next_sleep}s... error counts: {self.stats()}")
            await asyncio.sleep(next_sleep)

    async def run_forever(self) -> None:
        await asyncio.gather(
            self.scan_forever(),
            self.publish_trigger.run_forever(),
        )
