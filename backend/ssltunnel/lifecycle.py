"""
Certificate lifecycle for the SSL tunnel subdomain.

``register`` claims a subdomain from the registration service, persists the
tunnel token, obtains a certificate through a DNS-01 challenge published by
the registration service, stores it and finally associates the owner's
email. ``renew`` reuses the persisted token to obtain a fresh certificate
through an HTTP-01 challenge served from the local webroot.

Both flows hold the same per-installation lock, so at most one lifecycle
operation touches the token and the certificate bundle at a time.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

from .acme_client import ACMEIssuer
from .challenges import DNS_01, HTTP_01, get_challenge_publisher
from .config import TunnelConfig, apply_log_level
from .errors import (
    EmailAssociationError,
    IssuanceError,
    NetworkError,
    PersistenceError,
    SubscriptionError,
    TunnelError,
)
from .registrar import SubdomainRegistrar
from .settings import SettingsStore
from .storage import CertificateStore


logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegistrationState(str, Enum):
    SUBSCRIBING = "subscribing"
    PERSISTING_TOKEN = "persisting_token"
    ISSUING_CERTIFICATE = "issuing_certificate"
    PERSISTING_CERTIFICATE = "persisting_certificate"
    ASSOCIATING_EMAIL = "associating_email"
    COMPLETE = "complete"
    FAILED = "failed"


class RenewalState(str, Enum):
    LOADING_TOKEN = "loading_token"
    RECONSTRUCTING_DOMAIN = "reconstructing_domain"
    ISSUING_CERTIFICATE = "issuing_certificate"
    PERSISTING_CERTIFICATE = "persisting_certificate"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class RegistrationRequest:
    """Input of a single register call. Not persisted."""

    email: str
    reclamation_token: Optional[str]
    subdomain: str
    full_domain: str
    email_optout: bool


@dataclass
class RegistrationResult:
    """Outcome of a register call."""

    success: bool
    error: Optional[TunnelError] = None
    failed_state: Optional[RegistrationState] = None
    # True once a certificate bundle was persisted, even if a later step failed
    certificate_ready: bool = False
    domain: Optional[str] = None

    @property
    def email_association_pending(self) -> bool:
        """Certificate is usable but the email association needs a retry."""
        return isinstance(self.error, EmailAssociationError)


@dataclass
class RenewalStatus:
    """Outcome of the most recent renewal attempt."""

    last_attempt: Optional[str] = None  # ISO format datetime
    last_success: Optional[str] = None  # ISO format datetime
    last_error: Optional[str] = None
    failed_state: Optional[RenewalState] = None
    domain: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CertificateLifecycleManager:
    """Runs the register and renew flows for one installation."""

    def __init__(
        self,
        config: TunnelConfig,
        registrar: Optional[SubdomainRegistrar] = None,
        issuer: Optional[ACMEIssuer] = None,
        settings_store: Optional[SettingsStore] = None,
        certificate_store: Optional[CertificateStore] = None,
        on_certificate_updated: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        """
        Args:
            config: Tunnel configuration
            registrar: Registration service client (built from config if omitted)
            issuer: ACME issuer (built from config if omitted)
            settings_store: Tunnel token store (built from config if omitted)
            certificate_store: Certificate bundle store (built from config if omitted)
            on_certificate_updated: Async callback run after a new bundle is stored
        """
        self.config = config
        self.registrar = registrar or SubdomainRegistrar(
            config.registration_endpoint,
            timeout=config.request_timeout,
        )
        self.issuer = issuer or ACMEIssuer.from_config(config)
        self.settings_store = settings_store or SettingsStore(Path(config.settings_file))
        self.certificate_store = certificate_store or CertificateStore(Path(config.ssl_dir))
        self.on_certificate_updated = on_certificate_updated

        self.renewal_status = RenewalStatus()
        self._lock = asyncio.Lock()

    def reconfigure(self, config: TunnelConfig) -> None:
        """
        Rebuild the components from a new config.

        The lifecycle lock and renewal status are kept. An operation already
        in flight finishes with the components it started with.
        """
        self.config = config
        self.registrar = SubdomainRegistrar(
            config.registration_endpoint,
            timeout=config.request_timeout,
        )
        self.issuer = ACMEIssuer.from_config(config)
        self.settings_store = SettingsStore(Path(config.settings_file))
        self.certificate_store = CertificateStore(Path(config.ssl_dir))
        logger.info("[SSLTUNNEL] Lifecycle manager reconfigured for base domain %s", config.base_domain)

    @property
    def is_busy(self) -> bool:
        """Whether a lifecycle operation is in flight."""
        return self._lock.locked()

    async def _step(
        self,
        awaitable: Awaitable[T],
        timeout: float,
        error_cls: type[TunnelError],
        what: str,
        timeout_cls: Optional[type[TunnelError]] = None,
    ) -> T:
        """Await one suspending call under a deadline, mapping failures to error_cls."""
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except TunnelError:
            raise
        except asyncio.TimeoutError as e:
            raise (timeout_cls or error_cls)(f"{what} timed out after {timeout}s") from e
        except Exception as e:
            raise error_cls(f"{what} failed: {e}") from e

    async def _local_step(self, func: Callable[..., T], *args, timeout: float, what: str) -> T:
        """
        Run a blocking storage call in a worker thread.

        Worker threads cannot be cancelled, so the deadline only warns. The
        call is always awaited to completion before the caller moves on or
        releases the lifecycle lock.
        """
        task = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            try:
                return await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                if task.done():
                    raise
                logger.warning(
                    "[SSLTUNNEL] %s exceeded %ss, waiting for it to finish", what, timeout,
                )
                return await task
            except asyncio.CancelledError:
                await asyncio.gather(task, return_exceptions=True)
                raise
        except TunnelError:
            raise
        except Exception as e:
            raise PersistenceError(f"{what} failed: {e}") from e

    async def _notify_certificate_updated(self) -> None:
        if self.on_certificate_updated is None:
            return
        try:
            await self.on_certificate_updated()
        except Exception as e:
            logger.error("[SSLTUNNEL] Certificate update callback failed: %s", e)

    @staticmethod
    def _validate(request: RegistrationRequest) -> None:
        if not request.email or not request.subdomain:
            raise SubscriptionError("Email and subdomain are required")
        if not request.full_domain.startswith(f"{request.subdomain}."):
            raise SubscriptionError(
                f"Domain {request.full_domain} does not belong to subdomain {request.subdomain}"
            )

    async def register(
        self,
        email: str,
        reclamation_token: Optional[str],
        subdomain: str,
        full_domain: str,
        email_optout: bool,
    ) -> RegistrationResult:
        """
        Register a subdomain and obtain its first certificate.

        Args:
            email: Owner email address
            reclamation_token: Token for re-claiming a previously registered subdomain
            subdomain: The subdomain being registered
            full_domain: The full domain being registered
            email_optout: Whether the owner opted out of emails

        Returns:
            RegistrationResult; never raises for lifecycle failures
        """
        if reclamation_token is not None:
            reclamation_token = reclamation_token.strip() or None

        request = RegistrationRequest(
            email=email.strip(),
            reclamation_token=reclamation_token,
            subdomain=subdomain.strip().lower(),
            full_domain=full_domain.strip().lower(),
            email_optout=email_optout,
        )

        async with self._lock:
            return await self._register(request)

    async def _register(self, request: RegistrationRequest) -> RegistrationResult:
        logger.debug(
            "[SSLTUNNEL] Starting registration: subdomain=%s domain=%s reclaim=%s optout=%s",
            request.subdomain, request.full_domain,
            request.reclamation_token is not None, request.email_optout,
        )

        # Components are fixed for the whole operation, even across reconfigure()
        cfg = self.config
        registrar = self.registrar
        issuer = self.issuer
        certificate_store = self.certificate_store
        settings_store = self.settings_store
        state = RegistrationState.SUBSCRIBING
        certificate_ready = False

        try:
            self._validate(request)
            token = await self._step(
                registrar.subscribe(
                    request.subdomain,
                    request.email,
                    request.reclamation_token,
                ),
                cfg.request_timeout,
                SubscriptionError,
                "Subscription",
                timeout_cls=NetworkError,
            )

            state = RegistrationState.PERSISTING_TOKEN
            token = await self._local_step(
                settings_store.save, token,
                timeout=cfg.request_timeout,
                what="Saving tunnel token",
            )

            state = RegistrationState.ISSUING_CERTIFICATE
            publisher = get_challenge_publisher(
                DNS_01,
                registrar=registrar,
                tunnel_token=token.token,
                propagation_delay=cfg.dns_propagation_delay,
            )
            bundle = await self._step(
                issuer.issue(
                    request.full_domain,
                    cfg.cert_email or request.email,
                    DNS_01,
                    publisher,
                ),
                cfg.issue_timeout,
                IssuanceError,
                "Certificate issuance",
            )
            logger.debug("[SSLTUNNEL] Registration issuance succeeded for %s", request.full_domain)

            state = RegistrationState.PERSISTING_CERTIFICATE
            await self._local_step(
                certificate_store.write, bundle,
                timeout=cfg.request_timeout,
                what="Saving certificate",
            )
            certificate_ready = True
            await self._notify_certificate_updated()

            # A reclaimed subdomain already has its email association
            if request.reclamation_token is None:
                state = RegistrationState.ASSOCIATING_EMAIL
                await self._step(
                    registrar.set_email(token.token, request.email, request.email_optout),
                    cfg.request_timeout,
                    EmailAssociationError,
                    "Email association",
                )

        except TunnelError as e:
            logger.error(
                "[SSLTUNNEL] Registration failed while %s: %s",
                state.value.replace("_", " "), e,
            )
            return RegistrationResult(
                success=False,
                error=e,
                failed_state=state,
                certificate_ready=certificate_ready,
                domain=request.full_domain,
            )

        logger.info("[SSLTUNNEL] Registration complete for %s", request.full_domain)
        return RegistrationResult(
            success=True,
            certificate_ready=True,
            domain=request.full_domain,
        )

    async def renew(self) -> None:
        """
        Renew the certificate for the registered subdomain.

        Unattended: failures are logged and recorded in renewal_status,
        never raised.
        """
        async with self._lock:
            await self._renew()

    async def _renew(self) -> None:
        logger.debug("[SSLTUNNEL] Starting renewal")

        cfg = self.config
        issuer = self.issuer
        certificate_store = self.certificate_store
        settings_store = self.settings_store
        status = RenewalStatus(
            last_attempt=_now_iso(),
            last_success=self.renewal_status.last_success,
        )
        state = RenewalState.LOADING_TOKEN

        try:
            token = await self._local_step(
                settings_store.load,
                timeout=cfg.request_timeout,
                what="Loading tunnel token",
            )
            if token is None:
                logger.error("[SSLTUNNEL] Tunnel token not set, nothing to renew")
                status.last_error = "Tunnel token not set"
                status.failed_state = state
                self.renewal_status = status
                return

            state = RenewalState.RECONSTRUCTING_DOMAIN
            domain = cfg.full_domain(token.name)
            status.domain = domain

            state = RenewalState.ISSUING_CERTIFICATE
            publisher = get_challenge_publisher(HTTP_01, webroot=Path(cfg.webroot_path))
            bundle = await self._step(
                issuer.issue(domain, cfg.cert_email, HTTP_01, publisher),
                cfg.issue_timeout,
                IssuanceError,
                "Certificate issuance",
            )

            state = RenewalState.PERSISTING_CERTIFICATE
            await self._local_step(
                certificate_store.write, bundle,
                timeout=cfg.request_timeout,
                what="Saving certificate",
            )

        except TunnelError as e:
            logger.error(
                "[SSLTUNNEL] Renewal failed while %s: %s",
                state.value.replace("_", " "), e,
            )
            status.last_error = str(e)
            status.failed_state = state
            self.renewal_status = status
            return

        status.last_success = _now_iso()
        self.renewal_status = status
        logger.info("[SSLTUNNEL] Renewal success for %s", domain)
        await self._notify_certificate_updated()


# One manager per installation so the lifecycle lock is shared
_managers: dict[str, CertificateLifecycleManager] = {}


def get_lifecycle_manager(config: TunnelConfig) -> CertificateLifecycleManager:
    """
    Get the shared lifecycle manager for the installation a config describes.

    A changed config for the same installation reconfigures the existing
    manager, so its lock keeps serializing lifecycle operations.
    """
    key = config.installation_key
    manager = _managers.get(key)
    if manager is None:
        apply_log_level(config)
        manager = CertificateLifecycleManager(config)
        _managers[key] = manager
    elif manager.config != config:
        apply_log_level(config)
        manager.reconfigure(config)
    return manager


def clear_lifecycle_managers() -> None:
    """Forget all shared managers (tests, config reload)."""
    _managers.clear()
