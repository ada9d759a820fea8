"""
ACME challenge publishers for DNS-01 and HTTP-01 validation.

A publisher makes a challenge proof externally observable. Registration
uses the registration service to publish a DNS TXT record; renewal writes
the proof into the local webroot, which the gateway serves over HTTP.
"""
import asyncio
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from .errors import ChallengeError


logger = logging.getLogger(__name__)

ChallengeType = Literal["http-01", "dns-01"]

DNS_01 = "dns-01"
HTTP_01 = "http-01"

ACME_CHALLENGE_DIR = Path(".well-known") / "acme-challenge"


@dataclass
class ChallengeProof:
    """A single challenge/response round."""

    type: ChallengeType
    domain: str
    token: str
    key_authorization: str
    # base64url(sha256(key_authorization)), the DNS-01 TXT value
    key_authorization_digest: str

    @property
    def txt_record_name(self) -> str:
        return f"_acme-challenge.{self.domain}"

    @property
    def url_path(self) -> str:
        return f"/.well-known/acme-challenge/{self.token}"


class ChallengePublisher(ABC):
    """
    Abstract base class for challenge publishers.

    Implementations make a proof visible to the certificate authority and
    remove it once validation is over.
    """

    challenge_type: ChallengeType

    @abstractmethod
    async def publish(self, proof: ChallengeProof) -> None:
        """
        Publish the proof. Resolves once it is believed to be visible.

        Raises:
            ChallengeError: If the proof could not be published
        """
        pass

    @abstractmethod
    async def cleanup(self, proof: ChallengeProof) -> None:
        """Remove a published proof after validation."""
        pass


class RegistrarDNSPublisher(ChallengePublisher):
    """Publishes DNS-01 TXT records through the registration service."""

    challenge_type = DNS_01

    def __init__(self, registrar, tunnel_token: str, propagation_delay: float = 30.0):
        """
        Args:
            registrar: SubdomainRegistrar owning DNS for the shared domain
            tunnel_token: Subscription token authorizing the dnsconfig call
            propagation_delay: Seconds to wait after the record is accepted
        """
        self.registrar = registrar
        self.tunnel_token = tunnel_token
        self.propagation_delay = propagation_delay

    async def publish(self, proof: ChallengeProof) -> None:
        # The registrar computes nothing; it publishes the digest as-is
        await self.registrar.publish_dns_challenge(
            self.tunnel_token,
            proof.key_authorization_digest,
        )
        if self.propagation_delay > 0:
            logger.debug(
                "[SSLTUNNEL-CHALLENGE] Waiting %ss for DNS propagation of %s",
                self.propagation_delay, proof.txt_record_name,
            )
            await asyncio.sleep(self.propagation_delay)

    async def cleanup(self, proof: ChallengeProof) -> None:
        # The registration service owns the TXT record
        return None


class WebrootPublisher(ChallengePublisher):
    """Publishes HTTP-01 proofs as files under a locally served webroot."""

    challenge_type = HTTP_01

    def __init__(self, webroot: Path):
        self.webroot = Path(webroot)

    def challenge_path(self, token: str) -> Path:
        """Path of the proof file for a token."""
        if not token or "/" in token or "\\" in token or token in (".", ".."):
            raise ChallengeError(f"Invalid challenge token: {token!r}")
        return self.webroot / ACME_CHALLENGE_DIR / token

    async def publish(self, proof: ChallengeProof) -> None:
        path = self.challenge_path(proof.token)
        try:
            await asyncio.to_thread(self._write, path, proof.key_authorization)
        except OSError as e:
            logger.error("[SSLTUNNEL-CHALLENGE] Failed to write HTTP-01 challenge %s: %s", path, e)
            raise ChallengeError(f"Failed to write challenge file: {e}") from e
        logger.info("[SSLTUNNEL-CHALLENGE] Registered HTTP-01 challenge: %s", proof.token)

    @staticmethod
    def _write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        os.chmod(path, 0o644)

    async def cleanup(self, proof: ChallengeProof) -> None:
        path = self.challenge_path(proof.token)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
            logger.info("[SSLTUNNEL-CHALLENGE] Cleared HTTP-01 challenge: %s", proof.token)
        except OSError as e:
            logger.warning("[SSLTUNNEL-CHALLENGE] Failed to clear HTTP-01 challenge %s: %s", path, e)


def get_challenge_publisher(
    challenge_type: str,
    registrar=None,
    tunnel_token: str = "",
    webroot: Optional[Path] = None,
    propagation_delay: float = 30.0,
) -> ChallengePublisher:
    """
    Get a challenge publisher for a challenge type.

    Args:
        challenge_type: "dns-01" or "http-01"
        registrar: SubdomainRegistrar (DNS-01)
        tunnel_token: Subscription token (DNS-01)
        webroot: Locally served directory (HTTP-01)
        propagation_delay: DNS propagation wait (DNS-01)

    Raises:
        ValueError: If the challenge type is not supported or its inputs are missing
    """
    challenge_type = challenge_type.lower().strip()

    if challenge_type == DNS_01:
        if registrar is None or not tunnel_token:
            raise ValueError("DNS-01 publishing requires a registrar and a tunnel token")
        return RegistrarDNSPublisher(registrar, tunnel_token, propagation_delay)
    elif challenge_type == HTTP_01:
        if webroot is None:
            raise ValueError("HTTP-01 publishing requires a webroot")
        return WebrootPublisher(webroot)
    else:
        raise ValueError(f"Unsupported challenge type: {challenge_type}")


def read_webroot_challenge(webroot: Path, token: str) -> Optional[str]:
    """Read a published HTTP-01 proof, or None if there is none."""
    try:
        path = WebrootPublisher(webroot).challenge_path(token)
    except ChallengeError:
        return None
    if not path.is_file():
        return None
    return path.read_text()
