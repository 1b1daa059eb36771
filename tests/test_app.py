"""Tests for process wiring."""

import pytest

from le_responder.app import build_application
from le_responder.config import parse_config
from le_responder.observers import AdminCertObserver, OutputObserver

CONFIG = """
sources:
  selfsigned:
    type: self-signed
daemon:
  days_before: 30
  period: 3600
  bootstrap:
    source: selfsigned
servers:
  acme_responder:
    port: 8081
  admin_ui:
    external_url: https://admin.example.com/
output:
  s3:
    - region: eu-west-1
      bucket: certs
      object: bundle.tgz
"""


@pytest.fixture
def application(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    return build_application(parse_config(CONFIG))


def test_components_are_wired(application):
    daemon = application.daemon

    assert daemon.our_hostname == "admin.example.com"
    assert daemon.sources() == ["selfsigned"]
    assert [type(o) for o in daemon.observers] == [AdminCertObserver, OutputObserver]
    assert application.output_observer.ship_to_proxy == daemon.ship_to_proxy
    assert not application.output_observer.ship_to_proxy("admin.example.com")
    assert application.output_observer.buckets[0].conf.bucket == "certs"


def test_responder_listener_config(application):
    assert application.hypercorn_config().bind == ["0.0.0.0:8081"]
