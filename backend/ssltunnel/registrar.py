"""
Client for the subdomain registration service.

The registration service owns DNS for the shared domain. It hands out
subdomains (``/subscribe``), publishes DNS-01 TXT records on our behalf
(``/dnsconfig``) and records the owner's email (``/setemail``).
"""
import json
import logging
from typing import Optional

import httpx

from .errors import (
    ChallengeError,
    EmailAssociationError,
    NetworkError,
    SubscriptionError,
)
from .settings import TunnelToken


logger = logging.getLogger(__name__)


class SubdomainRegistrar:
    """
    HTTP client for the registration service.

    All parameters are sent as URL-encoded query parameters.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the registrar client.

        Args:
            endpoint: Base URL of the registration service
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Create an httpx client with fixed base URL."""
        return httpx.AsyncClient(
            base_url=self.endpoint,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _get(self, path: str, params: dict) -> httpx.Response:
        async with self._client() as client:
            resp = await client.get(path, params=params)
            resp.raise_for_status()
            return resp

    async def subscribe(
        self,
        name: str,
        email: str,
        reclamation_token: Optional[str] = None,
    ) -> TunnelToken:
        """
        Claim a subdomain.

        Args:
            name: Requested subdomain name
            email: Owner email address
            reclamation_token: Token for re-claiming a previously registered name

        Returns:
            TunnelToken for the subdomain

        Raises:
            SubscriptionError: If the service rejected the request
            NetworkError: If the service could not be reached
        """
        params = {"name": name, "email": email}
        if reclamation_token:
            params["reclamationToken"] = reclamation_token.strip()

        try:
            resp = await self._get("/subscribe", params)
        except httpx.HTTPError as e:
            logger.error("[SSLTUNNEL-REGISTRAR] Failed to subscribe: %s", e)
            raise NetworkError(f"Failed to reach registration service: {e}") from e

        logger.debug("[SSLTUNNEL-REGISTRAR] Sent subscription to server: %s", resp.status_code)

        try:
            body = json.loads(resp.text)
        except ValueError as e:
            raise SubscriptionError("Invalid response from registration service") from e

        if not isinstance(body, dict):
            raise SubscriptionError("Invalid response from registration service")

        if body.get("error"):
            logger.warning("[SSLTUNNEL-REGISTRAR] Subscription rejected: %s", body["error"])
            raise SubscriptionError(str(body["error"]))

        token = body.get("token")
        if not token:
            raise SubscriptionError("Registration service returned no token")

        return TunnelToken(name=name, token=token)

    async def publish_dns_challenge(self, token: str, challenge_digest: str) -> None:
        """
        Ask the registration service to publish a DNS-01 TXT record.

        Success means the service accepted the digest, not that DNS has
        propagated.

        Raises:
            ChallengeError: If the service could not be reached or refused
        """
        try:
            await self._get("/dnsconfig", {"token": token, "challenge": challenge_digest})
        except httpx.HTTPError as e:
            logger.error("[SSLTUNNEL-REGISTRAR] Failed to set DNS token on registration server: %s", e)
            raise ChallengeError(f"Failed to publish DNS challenge: {e}") from e

        logger.debug("[SSLTUNNEL-REGISTRAR] Set DNS token on registration server")

    async def set_email(self, token: str, email: str, optout: bool) -> None:
        """
        Associate the owner's email with the subdomain.

        Raises:
            EmailAssociationError: If the service could not be reached or refused
        """
        params = {
            "token": token,
            "email": email,
            "optout": "true" if optout else "false",
        }
        try:
            await self._get("/setemail", params)
        except httpx.HTTPError as e:
            logger.error("[SSLTUNNEL-REGISTRAR] Failed to set email on server: %s", e)
            raise EmailAssociationError(f"Failed to set email on registration service: {e}") from e

        logger.debug("[SSLTUNNEL-REGISTRAR] Set email on server")
