"""
Shared fixtures for ssltunnel tests.

The lifecycle runs against in-process fakes of the registration service and
the ACME CA; everything on disk lives under pytest's tmp_path.
"""
import pytest

from ssltunnel.acme_client import ACMEIssuer
from ssltunnel.config import TunnelConfig
from ssltunnel.lifecycle import CertificateLifecycleManager
from ssltunnel.registrar import SubdomainRegistrar
from tests.fakes import (
    ACME_DIRECTORY,
    REGISTRAR_BASE,
    FakeACMEServer,
    FakeRegistrationService,
)


@pytest.fixture
def tunnel_config(tmp_path):
    """Config pointing every path into tmp_path, with no waiting."""
    return TunnelConfig(
        base_domain="example.com",
        registration_endpoint=REGISTRAR_BASE,
        cert_email="admin@example.com",
        acme_directory_url=ACME_DIRECTORY,
        ssl_dir=str(tmp_path / "ssl"),
        webroot_path=str(tmp_path / "www"),
        settings_file=str(tmp_path / "settings.json"),
        account_key_path=str(tmp_path / "acme" / "account.pem"),
        request_timeout=5.0,
        issue_timeout=30.0,
        dns_propagation_delay=0,
        acme_poll_interval=0,
        acme_poll_attempts=5,
    )


@pytest.fixture
def registration_service():
    """Fake registration service handing out token abc123."""
    return FakeRegistrationService(token="abc123")


@pytest.fixture
def fake_acme():
    """Fake ACME CA."""
    return FakeACMEServer()


@pytest.fixture
def registrar(tunnel_config, registration_service):
    return SubdomainRegistrar(
        tunnel_config.registration_endpoint,
        timeout=tunnel_config.request_timeout,
        transport=registration_service.transport(),
    )


@pytest.fixture
def issuer(tunnel_config, fake_acme):
    return ACMEIssuer.from_config(tunnel_config, transport=fake_acme.transport())


@pytest.fixture
def manager(tunnel_config, registrar, issuer):
    """Lifecycle manager with real components wired to the fakes."""
    return CertificateLifecycleManager(
        tunnel_config,
        registrar=registrar,
        issuer=issuer,
    )
