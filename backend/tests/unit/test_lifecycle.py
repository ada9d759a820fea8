"""
Unit tests for the certificate lifecycle manager.

Tests: register (DNS-01), renew (HTTP-01), failure states, locking, deadlines
Mocks: registration service and ACME CA fakes; storage failures via patch.object.
"""
import asyncio
import json
import os
import time
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from ssltunnel.challenges import read_webroot_challenge
from ssltunnel.errors import (
    ChallengeError,
    EmailAssociationError,
    IssuanceError,
    NetworkError,
    PersistenceError,
    SubscriptionError,
)
from ssltunnel.lifecycle import (
    RegistrationState,
    RenewalState,
    clear_lifecycle_managers,
    get_lifecycle_manager,
)
from ssltunnel.settings import TunnelToken


EMAIL = "user@example.com"
SUBDOMAIN = "mygateway"
DOMAIN = "mygateway.example.com"


async def _register(manager, reclamation_token=None, optout=False):
    return await manager.register(EMAIL, reclamation_token, SUBDOMAIN, DOMAIN, optout)


def _cert_serial(manager):
    return manager.certificate_store.get_certificate_info().serial_number


class TestRegister:
    """Tests for CertificateLifecycleManager.register()."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, manager, registration_service, fake_acme, tunnel_config):
        """Fresh registration subscribes, saves the token, proves DNS, stores the bundle, sets email."""
        fake_acme.validator = lambda challenge_type, token: (
            challenge_type == "dns-01"
            and registration_service.dns_challenges[-1:] == [fake_acme.expected_digest(token)]
        )

        result = await _register(manager)

        assert result.success is True
        assert result.error is None
        assert result.certificate_ready is True
        assert result.domain == DOMAIN

        assert registration_service.paths() == ["/subscribe", "/dnsconfig", "/setemail"]
        assert registration_service.params("/subscribe") == [{"name": SUBDOMAIN, "email": EMAIL}]
        assert registration_service.params("/dnsconfig") == [
            {"token": "abc123", "challenge": fake_acme.expected_digest("tok-dns01-0")}
        ]
        assert registration_service.params("/setemail") == [
            {"token": "abc123", "email": EMAIL, "optout": "false"}
        ]

        settings = json.loads(Path(tunnel_config.settings_file).read_text())
        assert settings["tunneltoken"]["name"] == SUBDOMAIN
        assert settings["tunneltoken"]["token"] == "abc123"

        assert fake_acme.domain == DOMAIN
        assert fake_acme.responded == ["dns-01"]
        store = manager.certificate_store
        assert store.cert_path.read_text() + store.chain_path.read_text() == fake_acme.issued[0]
        assert store.get_certificate_info().domains == [DOMAIN]

    @pytest.mark.asyncio
    async def test_acme_account_uses_configured_email(self, manager, fake_acme):
        await _register(manager)

        assert fake_acme.account_contact == ["mailto:admin@example.com"]

    @pytest.mark.asyncio
    async def test_acme_account_falls_back_to_request_email(self, manager, fake_acme):
        manager.config = manager.config.model_copy(update={"cert_email": ""})

        await _register(manager)

        assert fake_acme.account_contact == [f"mailto:{EMAIL}"]

    @pytest.mark.asyncio
    async def test_optout_forwarded(self, manager, registration_service):
        await _register(manager, optout=True)

        assert registration_service.params("/setemail")[0]["optout"] == "true"

    @pytest.mark.asyncio
    async def test_name_taken(self, manager, registration_service, fake_acme):
        """A rejected subscription stops before anything is persisted or issued."""
        registration_service.subscribe_error = "name taken"

        result = await _register(manager)

        assert result.success is False
        assert isinstance(result.error, SubscriptionError)
        assert str(result.error) == "name taken"
        assert result.failed_state == RegistrationState.SUBSCRIBING
        assert result.certificate_ready is False
        assert registration_service.paths() == ["/subscribe"]
        assert manager.settings_store.load() is None
        assert not manager.certificate_store.has_certificate()
        assert fake_acme.requests == []

    @pytest.mark.asyncio
    async def test_registration_service_unreachable(self, manager, registration_service):
        registration_service.failures["/subscribe"] = "unreachable"

        result = await _register(manager)

        assert isinstance(result.error, NetworkError)
        assert result.failed_state == RegistrationState.SUBSCRIBING

    @pytest.mark.asyncio
    async def test_reclamation_skips_email(self, manager, registration_service):
        """Reclaiming sends the trimmed token and never calls setemail."""
        result = await _register(manager, reclamation_token="  reclaim-me\n")

        assert result.success is True
        assert registration_service.params("/subscribe")[0]["reclamationToken"] == "reclaim-me"
        assert "/setemail" not in registration_service.paths()

    @pytest.mark.asyncio
    async def test_blank_reclamation_token_is_fresh_registration(self, manager, registration_service):
        result = await _register(manager, reclamation_token="   ")

        assert result.success is True
        assert "reclamationToken" not in registration_service.params("/subscribe")[0]
        assert "/setemail" in registration_service.paths()

    @pytest.mark.asyncio
    async def test_domain_must_match_subdomain(self, manager, registration_service):
        result = await manager.register(EMAIL, None, SUBDOMAIN, "other.example.com", False)

        assert isinstance(result.error, SubscriptionError)
        assert registration_service.calls == []

    @pytest.mark.asyncio
    async def test_normalizes_input(self, manager, registration_service, fake_acme):
        result = await manager.register(f" {EMAIL} ", None, " MyGateway ", "MyGateway.Example.com", False)

        assert result.success is True
        assert registration_service.params("/subscribe")[0] == {"name": SUBDOMAIN, "email": EMAIL}
        assert fake_acme.domain == DOMAIN

    @pytest.mark.asyncio
    async def test_token_persist_failure(self, manager, registration_service, fake_acme):
        """If the token cannot be saved, no challenge is published."""
        with patch.object(
            manager.settings_store, "save", side_effect=PersistenceError("disk full"),
        ):
            result = await _register(manager)

        assert isinstance(result.error, PersistenceError)
        assert result.failed_state == RegistrationState.PERSISTING_TOKEN
        assert registration_service.paths() == ["/subscribe"]
        assert fake_acme.requests == []

    @pytest.mark.asyncio
    async def test_challenge_rejected(self, manager, registration_service, fake_acme):
        """A failed DNS-01 validation leaves the token saved but no certificate and no email."""
        fake_acme.validator = lambda challenge_type, token: False

        result = await _register(manager)

        assert isinstance(result.error, ChallengeError)
        assert result.failed_state == RegistrationState.ISSUING_CERTIFICATE
        assert result.certificate_ready is False
        assert manager.settings_store.load().token == "abc123"
        assert not manager.certificate_store.has_certificate()
        assert "/setemail" not in registration_service.paths()

    @pytest.mark.asyncio
    async def test_issuance_refused(self, manager, fake_acme):
        fake_acme.new_order_problem = (429, {"type": "urn:ietf:params:acme:error:rateLimited"})

        result = await _register(manager)

        assert isinstance(result.error, IssuanceError)
        assert result.error.kind == "issuance"
        assert result.failed_state == RegistrationState.ISSUING_CERTIFICATE

    @pytest.mark.asyncio
    async def test_certificate_persist_failure(self, manager, registration_service):
        with patch.object(
            manager.certificate_store, "write", side_effect=PersistenceError("read-only"),
        ):
            result = await _register(manager)

        assert isinstance(result.error, PersistenceError)
        assert result.failed_state == RegistrationState.PERSISTING_CERTIFICATE
        assert result.certificate_ready is False
        assert "/setemail" not in registration_service.paths()

    @pytest.mark.asyncio
    async def test_email_failure_keeps_certificate(self, manager, registration_service):
        """Email association failing after issuance still leaves a usable certificate."""
        registration_service.failures["/setemail"] = "unreachable"

        result = await _register(manager)

        assert result.success is False
        assert isinstance(result.error, EmailAssociationError)
        assert result.failed_state == RegistrationState.ASSOCIATING_EMAIL
        assert result.certificate_ready is True
        assert result.email_association_pending is True
        assert manager.certificate_store.has_certificate()
        assert manager.settings_store.load().token == "abc123"

    @pytest.mark.asyncio
    async def test_subscribe_timeout(self, manager, tunnel_config):
        """A hung registration service is a NetworkError, not a hang."""
        manager.config = tunnel_config.model_copy(update={"request_timeout": 0.05})

        async def hang(*args):
            await asyncio.sleep(10)

        with patch.object(manager.registrar, "subscribe", side_effect=hang):
            result = await _register(manager)

        assert isinstance(result.error, NetworkError)
        assert "timed out" in str(result.error)
        assert result.failed_state == RegistrationState.SUBSCRIBING
        assert not manager.is_busy

    @pytest.mark.asyncio
    async def test_issuance_timeout(self, manager, tunnel_config):
        manager.config = tunnel_config.model_copy(update={"issue_timeout": 0.05})

        async def hang(*args):
            await asyncio.sleep(10)

        with patch.object(manager.issuer, "issue", side_effect=hang):
            result = await _register(manager)

        assert isinstance(result.error, IssuanceError)
        assert result.failed_state == RegistrationState.ISSUING_CERTIFICATE

    @pytest.mark.asyncio
    async def test_certificate_updated_hook(self, manager):
        manager.on_certificate_updated = AsyncMock()

        await _register(manager)

        manager.on_certificate_updated.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hook_failure_does_not_fail_registration(self, manager):
        manager.on_certificate_updated = AsyncMock(side_effect=RuntimeError("reload failed"))

        result = await _register(manager)

        assert result.success is True


class TestRenew:
    """Tests for CertificateLifecycleManager.renew()."""

    @pytest.fixture
    def webroot_validator(self, fake_acme, tunnel_config):
        """CA validates HTTP-01 proofs by reading the webroot."""
        webroot = Path(tunnel_config.webroot_path)
        fake_acme.validator = lambda challenge_type, token: (
            challenge_type == "http-01"
            and read_webroot_challenge(webroot, token) == fake_acme.expected_key_authorization(token)
        )

    @pytest.mark.asyncio
    async def test_without_token_does_nothing(self, manager, registration_service, fake_acme):
        """No token means no remote calls and no files."""
        await manager.renew()

        assert registration_service.calls == []
        assert fake_acme.requests == []
        assert not manager.certificate_store.has_certificate()
        status = manager.renewal_status
        assert status.last_error == "Tunnel token not set"
        assert status.failed_state == RenewalState.LOADING_TOKEN

    @pytest.mark.asyncio
    async def test_renews_with_http01(self, manager, registration_service, fake_acme, webroot_validator):
        """Renewal rebuilds the domain from the stored name and proves it over HTTP."""
        manager.settings_store.save(TunnelToken(name=SUBDOMAIN, token="abc123"))

        await manager.renew()

        assert fake_acme.responded == ["http-01"]
        assert fake_acme.domain == DOMAIN
        assert registration_service.calls == []
        assert manager.certificate_store.has_certificate()
        status = manager.renewal_status
        assert status.last_error is None
        assert status.last_success is not None
        assert status.domain == DOMAIN

    @pytest.mark.asyncio
    async def test_after_register_renew_twice(self, manager, registration_service, fake_acme, webroot_validator):
        """Each renewal replaces the bundle; the registration service is not contacted."""
        http_validator = fake_acme.validator
        fake_acme.validator = lambda challenge_type, token: True
        await _register(manager)
        fake_acme.validator = http_validator
        calls_after_register = list(registration_service.calls)
        first = _cert_serial(manager)

        await manager.renew()
        second = _cert_serial(manager)
        await manager.renew()
        third = _cert_serial(manager)

        assert len({first, second, third}) == 3
        assert registration_service.calls == calls_after_register
        assert fake_acme.responded == ["dns-01", "http-01", "http-01"]
        assert manager.renewal_status.last_error is None

    @pytest.mark.asyncio
    async def test_failure_keeps_old_certificate(self, manager, fake_acme, webroot_validator):
        manager.settings_store.save(TunnelToken(name=SUBDOMAIN, token="abc123"))
        await manager.renew()
        before = _cert_serial(manager)
        last_success = manager.renewal_status.last_success

        fake_acme.validator = lambda challenge_type, token: False
        await manager.renew()

        assert _cert_serial(manager) == before
        status = manager.renewal_status
        assert "Challenge failed" in status.last_error
        assert status.failed_state == RenewalState.ISSUING_CERTIFICATE
        assert status.last_success == last_success

    @pytest.mark.asyncio
    async def test_persist_failure_recorded(self, manager, webroot_validator):
        manager.settings_store.save(TunnelToken(name=SUBDOMAIN, token="abc123"))

        with patch.object(
            manager.certificate_store, "write", side_effect=PersistenceError("read-only"),
        ):
            await manager.renew()

        assert manager.renewal_status.failed_state == RenewalState.PERSISTING_CERTIFICATE
        assert manager.renewal_status.last_error == "read-only"

    @pytest.mark.asyncio
    async def test_certificate_updated_hook(self, manager, webroot_validator):
        manager.settings_store.save(TunnelToken(name=SUBDOMAIN, token="abc123"))
        manager.on_certificate_updated = AsyncMock()

        await manager.renew()

        manager.on_certificate_updated.assert_awaited_once()


class TestLocking:
    """Register and renew never overlap on one installation."""

    @pytest.mark.asyncio
    async def test_renew_waits_for_register(self, manager):
        entered = asyncio.Event()
        release = asyncio.Event()
        real_subscribe = manager.registrar.subscribe

        async def slow_subscribe(*args):
            entered.set()
            await release.wait()
            return await real_subscribe(*args)

        with patch.object(manager.registrar, "subscribe", side_effect=slow_subscribe), \
                patch.object(manager.settings_store, "load", wraps=manager.settings_store.load) as load:
            register_task = asyncio.create_task(_register(manager))
            await entered.wait()
            renew_task = asyncio.create_task(manager.renew())
            await asyncio.sleep(0.01)

            assert manager.is_busy
            assert load.call_count == 0

            release.set()
            result = await register_task
            await renew_task

        assert result.success is True
        load.assert_called_once()
        assert manager.renewal_status.domain == DOMAIN
        assert not manager.is_busy

    @pytest.mark.asyncio
    async def test_slow_write_finishes_before_renew(self, manager, tunnel_config, fake_acme):
        """A certificate write past its deadline still completes before the lock is released."""
        manager.config = tunnel_config.model_copy(update={"request_timeout": 0.2})
        store = manager.certificate_store
        real_write = store.write
        writes = []

        def slow_write(bundle):
            if not writes:
                time.sleep(1.0)
            real_write(bundle)
            writes.append(bundle)

        with patch.object(store, "write", side_effect=slow_write):
            register_task = asyncio.create_task(_register(manager))
            renew_task = asyncio.create_task(manager.renew())
            result = await register_task
            await renew_task

        assert result.success is True
        assert result.certificate_ready is True
        assert manager.renewal_status.last_error is None
        assert len(writes) == 2
        assert len(fake_acme.issued) == 2
        renewed = store.parse_certificate(fake_acme.issued[-1].encode())
        assert _cert_serial(manager) == renewed.serial_number
        assert os.readlink(store.live_path) == os.path.join("archive", "bundle-0002")
        assert not manager.is_busy

    @pytest.mark.asyncio
    async def test_failed_slow_write_reported(self, manager, tunnel_config):
        """A write that fails after its deadline is reported as a persistence failure."""
        manager.config = tunnel_config.model_copy(update={"request_timeout": 0.2})

        def failing_write(bundle):
            time.sleep(0.6)
            raise OSError("disk full")

        with patch.object(manager.certificate_store, "write", side_effect=failing_write):
            result = await _register(manager)

        assert result.success is False
        assert isinstance(result.error, PersistenceError)
        assert "disk full" in str(result.error)
        assert result.failed_state == RegistrationState.PERSISTING_CERTIFICATE
        assert not manager.is_busy


class TestGetLifecycleManager:
    @pytest.fixture(autouse=True)
    def _clear(self):
        clear_lifecycle_managers()
        yield
        clear_lifecycle_managers()

    def test_shared_per_installation(self, tunnel_config):
        first = get_lifecycle_manager(tunnel_config)
        second = get_lifecycle_manager(tunnel_config.model_copy())

        assert first is second

    def test_separate_installations(self, tunnel_config, tmp_path):
        other = tunnel_config.model_copy(update={"settings_file": str(tmp_path / "other.json")})

        assert get_lifecycle_manager(tunnel_config) is not get_lifecycle_manager(other)

    def test_changed_config_reconfigures(self, tunnel_config):
        """A new config for the same installation updates the manager in place."""
        first = get_lifecycle_manager(tunnel_config)
        lock = first._lock
        changed = tunnel_config.model_copy(update={
            "base_domain": "new.example.org",
            "registration_endpoint": "https://other.test",
        })

        second = get_lifecycle_manager(changed)

        assert second is first
        assert second._lock is lock
        assert second.config.base_domain == "new.example.org"
        assert second.registrar.endpoint == "https://other.test"

    @pytest.mark.asyncio
    async def test_reconfigure_waits_for_running_operation(self, manager, tunnel_config):
        """An operation started before reconfigure() finishes with its own components."""
        entered = asyncio.Event()
        release = asyncio.Event()
        original_registrar = manager.registrar
        real_subscribe = original_registrar.subscribe

        async def slow_subscribe(*args):
            entered.set()
            await release.wait()
            return await real_subscribe(*args)

        with patch.object(original_registrar, "subscribe", side_effect=slow_subscribe), \
                patch.object(original_registrar, "set_email", wraps=original_registrar.set_email) as set_email:
            register_task = asyncio.create_task(_register(manager))
            await entered.wait()
            manager.reconfigure(tunnel_config.model_copy(update={"registration_endpoint": "https://other.test"}))
            release.set()
            result = await register_task

        assert result.success is True
        set_email.assert_called_once()
        assert manager.registrar is not original_registrar
        assert manager.registrar.endpoint == "https://other.test"
