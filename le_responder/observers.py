"""Observers notified whenever the certificate set changes."""

import asyncio
import gzip
import io
import logging
import os
import ssl
import tarfile
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

import boto3

from .config import BucketConfig
from .debounce import DebouncedTrigger
from .models import CertificateRecord

logger = logging.getLogger(__name__)

OUTPUT_QUIET_PERIOD = 30


class CertObserver(ABC):
    """Downstream consumer of the full certificate set."""

    @abstractmethod
    async def certs_updated(self, records: Sequence[CertificateRecord]) -> None:
        """Called with every record after a change. Raise on failure."""


class AdminCertObserver(CertObserver):
    """Keeps the admin listener's TLS context in step with its own record."""

    def __init__(self, our_hostname: str):
        self.our_hostname = our_hostname
        self._lock = threading.Lock()
        self._context: Optional[ssl.SSLContext] = None

    def current_context(self) -> Optional[ssl.SSLContext]:
        with self._lock:
            return self._context

    @staticmethod
    def create_ssl_context(record: CertificateRecord) -> ssl.SSLContext:
        """Create SSL context from a record."""
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)

        # Write certificate and key to temporary files
        with tempfile.NamedTemporaryFile(mode='w', suffix='.pem', delete=False) as cert_file:
            cert_file.write(f"{record.certificate.strip()}\n{record.ca.strip()}\n")
            cert_path = cert_file.name

        with tempfile.NamedTemporaryFile(mode='w', suffix='.key', delete=False) as key_file:
            key_file.write(record.private_key)
            key_path = key_file.name

        try:
            context.load_cert_chain(cert_path, key_path)
        finally:
            os.unlink(cert_path)
            os.unlink(key_path)

        return context

    async def certs_updated(self, records):
        for record in records:
            if record.hostname != self.our_hostname:
                continue
            if not record.is_issued():
                return
            loop = asyncio.get_running_loop()
            context = await loop.run_in_executor(None, self.create_ssl_context, record)
            with self._lock:
                self._context = context
            logger.info(f"Reloaded admin certificate for {self.our_hostname}")
            return


class S3Bucket:
    """S3 object that receives the certificate bundle."""

    def __init__(self, conf: BucketConfig):
        self.conf = conf
        self._lock = threading.Lock()
        self._client = None
        self.last_successful_written: Optional[bytes] = None

    def _get_client(self):
        if self._client is None:
            if self.conf.access_key:
                self._client = boto3.client(
                    's3',
                    aws_access_key_id=self.conf.access_key,
                    aws_secret_access_key=self.conf.access_secret,
                    region_name=self.conf.region
                )
            else:
                # Instance role or environment credentials
                self._client = boto3.client('s3', region_name=self.conf.region)
        return self._client

    def put(self, data: bytes) -> bool:
        """Upload data unless it matches the last upload. Returns True if uploaded."""
        with self._lock:
            if data == self.last_successful_written:
                return False

            self._get_client().upload_fileobj(
                io.BytesIO(data),
                self.conf.bucket,
                self.conf.object,
                ExtraArgs={'ServerSideEncryption': 'AES256'}
            )
            self.last_successful_written = data
            logger.info(f"Cert tarball successfully uploaded to: s3://{self.conf.bucket}/{self.conf.object}")
            return True


def create_tarball(records: Sequence[CertificateRecord], ship: Callable[[str], bool]) -> bytes:
    """Bundle shippable, issued records as a gzipped tar of <hex host>.crt files."""
    buffer = io.BytesIO()
    # Fixed gzip mtime so identical sets give identical bytes
    with gzip.GzipFile(fileobj=buffer, mode='wb', mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode='w') as tar:
            for record in records:
                hostname = record.hostname
                if not ship(hostname):
                    continue
                if not record.is_issued():
                    continue

                body = "\n".join([
                    record.private_key.strip(),
                    record.certificate.strip(),
                    record.ca.strip(),
                    "",
                ]).encode('utf-8')

                info = tarfile.TarInfo(name=hostname.encode('utf-8').hex() + ".crt")
                info.mode = 0o600
                info.size = len(body)
                info.type = tarfile.REGTYPE
                if record.created_at is not None:
                    info.mtime = int(record.created_at.timestamp())
                tar.addfile(info, io.BytesIO(body))
    return buffer.getvalue()


class OutputObserver(CertObserver):
    """Publishes a bundle of certificates to S3 after its own quiet period."""

    def __init__(self, buckets: List[S3Bucket], ship_to_proxy: Callable[[str], bool],
                 quiet_period: float = OUTPUT_QUIET_PERIOD):
        self.buckets = buckets
        self.ship_to_proxy = ship_to_proxy
        self.trigger = DebouncedTrigger("output", quiet_period)
        self.trigger.on_fire(self.publish)
        self._records: Optional[List[CertificateRecord]] = None

    async def certs_updated(self, records):
        self._records = list(records)
        self.trigger.signal()

    async def publish(self) -> None:
        if self._records is None:
            return
        data = create_tarball(self._records, self.ship_to_proxy)
        loop = asyncio.get_running_loop()
        for bucket in self.buckets:
            await loop.run_in_executor(None, bucket.put, data)

    async def run_forever(self) -> None:
        await self.trigger.run_forever()
