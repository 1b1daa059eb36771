"""Process wiring and entry point."""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from hypercorn.asyncio import serve
from hypercorn.config import Config as HypercornConfig

from .config import AppConfig, get_log_level, load_config
from .daemon import RenewalDaemon
from .errors import ConfigurationError
from .observers import AdminCertObserver, OutputObserver, S3Bucket
from .responder import ChallengeResponder, create_responder_app
from .sources import build_sources
from .storage import RedisCertificateStore

logger = logging.getLogger(__name__)


def setup_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or get_log_level(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@dataclass
class Application:
    """Everything the daemon process runs."""
    config: AppConfig
    storage: RedisCertificateStore
    responder: ChallengeResponder
    daemon: RenewalDaemon
    admin_observer: AdminCertObserver
    output_observer: OutputObserver
    responder_app: FastAPI

    def hypercorn_config(self) -> HypercornConfig:
        config = HypercornConfig()
        config.bind = [f"0.0.0.0:{self.config.servers.acme_responder.port}"]
        config.loglevel = get_log_level()
        return config

    async def run_forever(self) -> None:
        logger.info(f"Starting ACME responder on port {self.config.servers.acme_responder.port}")
        try:
            await asyncio.gather(
                self.daemon.run_forever(),
                self.output_observer.run_forever(),
                serve(self.responder_app, self.hypercorn_config()),
            )
        finally:
            await self.storage.close()


def build_application(config: AppConfig) -> Application:
    """Build every component from configuration."""
    our_hostname = config.our_hostname
    admin_url = config.servers.admin_ui.external_url

    storage = RedisCertificateStore(config.data.redis_url)
    responder = ChallengeResponder()
    sources = build_sources(config.sources, responder)

    admin_observer = AdminCertObserver(our_hostname)
    # Bound late, the daemon decides what ships
    output_observer = OutputObserver([S3Bucket(conf) for conf in config.output.s3], lambda host: True)

    daemon = RenewalDaemon(
        config.daemon, our_hostname, sources, storage,
        [admin_observer, output_observer]
    )
    output_observer.ship_to_proxy = daemon.ship_to_proxy

    return Application(
        config=config,
        storage=storage,
        responder=responder,
        daemon=daemon,
        admin_observer=admin_observer,
        output_observer=output_observer,
        responder_app=create_responder_app(responder, admin_url),
    )


def main() -> None:
    load_dotenv()
    setup_logging()

    try:
        application = build_application(load_config())
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        asyncio.run(application.run_forever())
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    main()
