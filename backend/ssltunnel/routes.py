"""
SSL tunnel API endpoints.

Provides REST endpoints for:
- Subdomain registration with certificate issuance
- Certificate renewal
- Tunnel and certificate status
- ACME HTTP-01 challenge serving from the webroot
"""
import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .challenges import read_webroot_challenge
from .config import load_tunnel_config
from .lifecycle import CertificateLifecycleManager, get_lifecycle_manager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ssltunnel", tags=["SSL Tunnel"])
challenge_router = APIRouter(tags=["SSL Tunnel"])


def get_manager(request: Request) -> CertificateLifecycleManager:
    """Dependency returning the lifecycle manager for this installation."""
    config = getattr(request.app.state, "config", None) or load_tunnel_config()
    return get_lifecycle_manager(config)


# ============================================================================
# Request/Response Models
# ============================================================================


class RegisterRequest(BaseModel):
    """Request to register a tunnel subdomain."""

    email: str
    subdomain: str
    reclamation_token: Optional[str] = None
    optout: bool = False


class RegisterResponse(BaseModel):
    """Outcome of a registration."""

    success: bool
    message: str
    domain: Optional[str] = None
    certificate_ready: bool = False
    email_association_pending: bool = False
    failed_state: Optional[str] = None
    error_kind: Optional[str] = None


class RenewalStatusResponse(BaseModel):
    """Outcome of the most recent renewal."""

    success: bool
    domain: Optional[str] = None
    last_attempt: Optional[str] = None
    last_success: Optional[str] = None
    last_error: Optional[str] = None
    failed_state: Optional[str] = None


class TunnelStatusResponse(BaseModel):
    """Tunnel registration and certificate status."""

    configured: bool
    registered: bool
    busy: bool = False
    subdomain: Optional[str] = None
    domain: Optional[str] = None
    has_certificate: bool = False
    certificate_valid: bool = False
    cert_subject: Optional[str] = None
    cert_issuer: Optional[str] = None
    cert_expires_at: Optional[str] = None
    days_until_expiry: Optional[int] = None
    last_renewal_attempt: Optional[str] = None
    last_renewal_success: Optional[str] = None
    last_renewal_error: Optional[str] = None


# ============================================================================
# ACME HTTP-01 Challenge Endpoint
# ============================================================================


@challenge_router.get("/.well-known/acme-challenge/{token}")
async def acme_http_challenge(
    token: str,
    manager: CertificateLifecycleManager = Depends(get_manager),
):
    """
    Serve ACME HTTP-01 challenge response from the webroot.

    This endpoint is called by Let's Encrypt to validate domain ownership
    during renewal.
    """
    response = await asyncio.to_thread(
        read_webroot_challenge, Path(manager.config.webroot_path), token
    )
    if response:
        logger.info("[SSLTUNNEL] Serving HTTP-01 challenge for token: %s...", token[:16])
        return PlainTextResponse(response)

    logger.warning("[SSLTUNNEL] HTTP-01 challenge not found for token: %s...", token[:16])
    raise HTTPException(status_code=404, detail="Challenge not found")


# ============================================================================
# Lifecycle Endpoints
# ============================================================================


@router.post("/register", response_model=RegisterResponse)
async def register_subdomain(
    request: RegisterRequest,
    manager: CertificateLifecycleManager = Depends(get_manager),
):
    """
    Register a tunnel subdomain and obtain its certificate.

    The certificate may be ready even when the overall result is a failure
    (email association failed after issuance); see certificate_ready.
    """
    config = manager.config
    if not config.is_configured():
        raise HTTPException(400, "SSL tunnel settings are incomplete")

    subdomain = request.subdomain.strip().lower()
    if not subdomain:
        raise HTTPException(400, "Subdomain is required")

    result = await manager.register(
        request.email,
        request.reclamation_token,
        subdomain,
        config.full_domain(subdomain),
        request.optout,
    )

    if result.success:
        message = "Subdomain registered and certificate issued"
    elif result.email_association_pending:
        message = f"Certificate issued, but email association failed: {result.error}"
    else:
        message = f"Registration failed: {result.error}"

    return RegisterResponse(
        success=result.success,
        message=message,
        domain=result.domain,
        certificate_ready=result.certificate_ready,
        email_association_pending=result.email_association_pending,
        failed_state=result.failed_state.value if result.failed_state else None,
        error_kind=result.error.kind if result.error else None,
    )


@router.post("/renew", response_model=RenewalStatusResponse)
async def renew_certificate(
    manager: CertificateLifecycleManager = Depends(get_manager),
):
    """Renew the tunnel certificate now and report the outcome."""
    await manager.renew()
    status = manager.renewal_status
    return RenewalStatusResponse(
        success=status.last_error is None,
        domain=status.domain,
        last_attempt=status.last_attempt,
        last_success=status.last_success,
        last_error=status.last_error,
        failed_state=status.failed_state.value if status.failed_state else None,
    )


@router.get("/status", response_model=TunnelStatusResponse)
async def get_tunnel_status(
    manager: CertificateLifecycleManager = Depends(get_manager),
):
    """Get tunnel registration, certificate and renewal status."""
    config = manager.config
    token = await asyncio.to_thread(manager.settings_store.load)
    storage = manager.certificate_store
    renewal = manager.renewal_status

    response = TunnelStatusResponse(
        configured=config.is_configured(),
        registered=token is not None,
        busy=manager.is_busy,
        subdomain=token.name if token else None,
        domain=config.full_domain(token.name) if token else None,
        has_certificate=storage.has_certificate(),
        last_renewal_attempt=renewal.last_attempt,
        last_renewal_success=renewal.last_success,
        last_renewal_error=renewal.last_error,
    )

    if response.has_certificate:
        info = await asyncio.to_thread(storage.get_certificate_info)
        if info and info.is_valid:
            response.certificate_valid = True
            response.cert_subject = info.subject
            response.cert_issuer = info.issuer
            response.cert_expires_at = info.not_after.isoformat()
            response.days_until_expiry = info.days_until_expiry()

    return response
