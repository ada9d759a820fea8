"""
ACME client for Let's Encrypt certificate issuance.

Implements the ACME exchange for a single domain: account registration,
order creation, challenge publication through a ChallengePublisher,
authorization polling, finalization and certificate download.
"""
import asyncio
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.x509.oid import NameOID
from josepy import JWKRSA
import josepy as jose

from .challenges import ChallengeProof, ChallengePublisher
from .errors import ChallengeError, IssuanceError
from .storage import CertificateBundle


logger = logging.getLogger(__name__)

ACME_ERROR_PREFIX = "urn:ietf:params:acme:error:"

# Problem types that mean the CA could not validate our proof
CHALLENGE_PROBLEMS = {
    "connection",
    "dns",
    "incorrectResponse",
    "tls",
}


class ACMEProblem(IssuanceError):
    """An RFC 8555 problem document returned by the CA."""

    def __init__(self, status: int, problem: dict):
        self.status = status
        self.problem_type = str(problem.get("type", "")).replace(ACME_ERROR_PREFIX, "")
        self.detail = problem.get("detail", "")
        super().__init__(
            f"ACME request failed: {status} {self.problem_type or 'unknown'}"
            + (f" - {self.detail}" if self.detail else "")
        )


class ACMEIssuer:
    """
    ACME client that turns a domain and a challenge publisher into a
    signed certificate bundle.
    """

    def __init__(
        self,
        directory_url: str,
        account_key_path: Optional[Path] = None,
        timeout: float = 30.0,
        poll_interval: float = 2.0,
        poll_attempts: int = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize ACME client.

        Args:
            directory_url: ACME directory URL
            account_key_path: Path to store/load account key
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between authorization/order polls
            poll_attempts: Maximum number of polls before giving up
            transport: Optional httpx transport (used by tests)
        """
        self.directory_url = directory_url
        self.account_key_path = Path(account_key_path) if account_key_path else None
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._transport = transport

        # Populated during initialization
        self.directory: dict = {}
        self.account_key: Optional[JWKRSA] = None
        self.account_url: Optional[str] = None
        self.account_email: Optional[str] = None
        self.nonce: Optional[str] = None

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.AsyncBaseTransport] = None) -> "ACMEIssuer":
        """Build an issuer from a TunnelConfig."""
        return cls(
            directory_url=config.directory_url,
            account_key_path=Path(config.account_key_path),
            timeout=config.request_timeout,
            poll_interval=config.acme_poll_interval,
            poll_attempts=config.acme_poll_attempts,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def initialize(self, email: str) -> None:
        """
        Fetch the directory, load/create the account key and register the account.

        Raises:
            IssuanceError: If the CA refuses the account
            httpx.HTTPError: On transport failure
        """
        if not self.directory:
            async with self._client() as client:
                resp = await client.get(self.directory_url)
                resp.raise_for_status()
                self.directory = resp.json()
            logger.info("[SSLTUNNEL-ACME] Fetched ACME directory from %s", self.directory_url)

        if self.account_key is None:
            self.account_key = self._load_or_create_account_key()

        if self.account_url is None or self.account_email != email:
            await self._register_account(email)

    def _load_or_create_account_key(self) -> JWKRSA:
        """Load existing account key or create a new one."""
        if self.account_key_path and self.account_key_path.exists():
            try:
                key_data = self.account_key_path.read_bytes()
                private_key = serialization.load_pem_private_key(key_data, password=None)
                logger.info("[SSLTUNNEL-ACME] Loaded existing ACME account key")
                return JWKRSA(key=private_key)
            except (OSError, ValueError, TypeError) as e:
                logger.warning("[SSLTUNNEL-ACME] Failed to load account key, creating new: %s", e)

        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
        )

        if self.account_key_path:
            try:
                self.account_key_path.parent.mkdir(parents=True, exist_ok=True)
                key_pem = private_key.private_bytes(
                    encoding=serialization.Encoding.PEM,
                    format=serialization.PrivateFormat.PKCS8,
                    encryption_algorithm=serialization.NoEncryption(),
                )
                self.account_key_path.write_bytes(key_pem)
                os.chmod(self.account_key_path, 0o600)
                logger.info("[SSLTUNNEL-ACME] Created and saved new ACME account key")
            except OSError as e:
                logger.warning("[SSLTUNNEL-ACME] Failed to save account key: %s", e)

        return JWKRSA(key=private_key)

    async def _get_nonce(self) -> str:
        """Get a fresh nonce from the ACME server."""
        async with self._client() as client:
            resp = await client.head(self.directory["newNonce"])
            return resp.headers["Replay-Nonce"]

    def _sign_request(
        self,
        url: str,
        payload: Optional[dict],
        use_jwk: bool = False,
    ) -> dict:
        """
        Sign a request with the account key.

        Args:
            url: The URL being requested
            payload: The payload to sign (or None for POST-as-GET)
            use_jwk: Include full JWK instead of kid (for registration)
        """
        if payload is None:
            payload_b64 = ""
        else:
            payload_b64 = jose.json_util.encode_b64jose(
                json.dumps(payload).encode("utf-8")
            )

        protected = {
            "alg": "RS256",
            "nonce": self.nonce,
            "url": url,
        }

        if use_jwk:
            protected["jwk"] = self.account_key.public_key().to_json()
        else:
            protected["kid"] = self.account_url

        protected_b64 = jose.json_util.encode_b64jose(
            json.dumps(protected).encode("utf-8")
        )

        signature_input = f"{protected_b64}.{payload_b64}".encode("utf-8")
        signature = self.account_key.key.sign(
            signature_input,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": jose.json_util.encode_b64jose(signature),
        }

    async def _acme_post(
        self,
        url: str,
        payload: Optional[dict] = None,
        use_jwk: bool = False,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        """
        Make a signed ACME request, retrying once on a stale nonce.

        Raises:
            ACMEProblem: If the server answers with an error
        """
        for attempt in range(2):
            if self.nonce is None:
                self.nonce = await self._get_nonce()

            signed = self._sign_request(url, payload, use_jwk)
            headers = {"Content-Type": "application/jose+json"}
            if accept:
                headers["Accept"] = accept

            async with self._client() as client:
                resp = await client.post(url, json=signed, headers=headers)

            self.nonce = resp.headers.get("Replay-Nonce")

            if resp.status_code < 400:
                return resp

            try:
                problem = resp.json() if resp.content else {}
            except ValueError:
                problem = {"detail": resp.text}
            error = ACMEProblem(resp.status_code, problem)
            if error.problem_type == "badNonce" and attempt == 0:
                logger.debug("[SSLTUNNEL-ACME] Bad nonce, retrying with a fresh one")
                continue
            raise error

        raise AssertionError("unreachable")

    async def _acme_request(
        self,
        url: str,
        payload: Optional[dict] = None,
        use_jwk: bool = False,
    ) -> tuple[dict, httpx.Headers]:
        """
        Make a signed ACME request.

        Returns:
            Tuple of (response_body, response_headers)
        """
        resp = await self._acme_post(url, payload, use_jwk)
        body = resp.json() if resp.content else {}
        return body, resp.headers

    async def _register_account(self, email: str) -> None:
        """Register or fetch existing ACME account."""
        payload = {"termsOfServiceAgreed": True}
        if email:
            payload["contact"] = [f"mailto:{email}"]

        _, headers = await self._acme_request(
            self.directory["newAccount"],
            payload,
            use_jwk=True,
        )

        self.account_url = headers.get("Location")
        self.account_email = email
        logger.info("[SSLTUNNEL-ACME] ACME account registered/retrieved: %s", self.account_url)

    def _get_thumbprint(self) -> str:
        """Account key thumbprint (RFC 7638) for key authorizations."""
        return jose.json_util.encode_b64jose(self.account_key.thumbprint())

    def build_proof(self, challenge_type: str, domain: str, token: str) -> ChallengeProof:
        """Compute the key authorization and its digest for a challenge token."""
        key_authorization = f"{token}.{self._get_thumbprint()}"
        digest = hashlib.sha256(key_authorization.encode("utf-8")).digest()
        return ChallengeProof(
            type=challenge_type,
            domain=domain,
            token=token,
            key_authorization=key_authorization,
            key_authorization_digest=jose.json_util.encode_b64jose(digest),
        )

    async def issue(
        self,
        domain: str,
        email: str,
        challenge_type: str,
        publisher: ChallengePublisher,
    ) -> CertificateBundle:
        """
        Obtain a certificate for a domain.

        Args:
            domain: The domain to get a certificate for
            email: ACME account contact email
            challenge_type: "dns-01" or "http-01"
            publisher: Publisher that makes proofs visible for challenge_type

        Returns:
            CertificateBundle with certificate, private key and chain

        Raises:
            ChallengeError: If a proof could not be published or validated
            IssuanceError: If the CA refused the request
        """
        if publisher.challenge_type != challenge_type:
            raise ChallengeError(
                f"Publisher handles {publisher.challenge_type}, not {challenge_type}"
            )

        try:
            await self.initialize(email)

            logger.info("[SSLTUNNEL-ACME] Creating certificate order for %s", domain)
            order, order_headers = await self._acme_request(
                self.directory["newOrder"],
                {"identifiers": [{"type": "dns", "value": domain}]},
            )
            order_url = order_headers.get("Location")

            for auth_url in order.get("authorizations", []):
                await self._authorize(auth_url, domain, challenge_type, publisher)

            cert_key, csr_b64 = self._build_csr(domain)

            logger.info("[SSLTUNNEL-ACME] Finalizing certificate order for %s", domain)
            order, _ = await self._acme_request(order["finalize"], {"csr": csr_b64})
            order = await self._poll_order(order, order_url)

            resp = await self._acme_post(
                order["certificate"],
                None,
                accept="application/pem-certificate-chain",
            )
            fullchain_pem = resp.text

        except ACMEProblem as e:
            if e.problem_type in CHALLENGE_PROBLEMS:
                raise ChallengeError(str(e)) from e
            raise
        except httpx.HTTPError as e:
            logger.error("[SSLTUNNEL-ACME] Failed to reach certificate authority: %s", e)
            raise IssuanceError(f"Failed to reach certificate authority: {e}") from e

        bundle = self._make_bundle(fullchain_pem, cert_key)
        logger.info("[SSLTUNNEL-ACME] Certificate issued for %s, expires %s", domain, bundle.expires_at)
        return bundle

    async def _authorize(
        self,
        auth_url: str,
        domain: str,
        challenge_type: str,
        publisher: ChallengePublisher,
    ) -> None:
        """Publish, respond to and poll a single authorization."""
        auth, _ = await self._acme_request(auth_url, None)
        if auth.get("status") == "valid":
            return

        challenge = next(
            (ch for ch in auth.get("challenges", []) if ch.get("type") == challenge_type),
            None,
        )
        if not challenge:
            raise ChallengeError(f"Challenge type {challenge_type} not available")

        proof = self.build_proof(challenge_type, domain, challenge["token"])
        logger.info(
            "[SSLTUNNEL-ACME] Challenge prepared: %s for %s", challenge_type, domain,
        )

        try:
            await publisher.publish(proof)
        except ChallengeError:
            raise
        except Exception as e:
            raise ChallengeError(f"Failed to publish {challenge_type} proof: {e}") from e

        try:
            logger.info("[SSLTUNNEL-ACME] Responding to %s challenge", challenge_type)
            await self._acme_request(challenge["url"], {})
            await self._poll_authorization(auth_url, domain, challenge_type)
        finally:
            try:
                await publisher.cleanup(proof)
            except Exception as e:
                logger.warning("[SSLTUNNEL-ACME] Failed to clean up %s proof: %s", challenge_type, e)

    async def _poll_authorization(self, auth_url: str, domain: str, challenge_type: str) -> None:
        for _ in range(self.poll_attempts):
            await asyncio.sleep(self.poll_interval)
            auth, _ = await self._acme_request(auth_url, None)
            status = auth.get("status")

            if status == "valid":
                logger.info("[SSLTUNNEL-ACME] Authorization valid for %s", domain)
                return
            if status == "invalid":
                detail = "Unknown error"
                for ch in auth.get("challenges", []):
                    if ch.get("type") == challenge_type and ch.get("error"):
                        detail = ch["error"].get("detail", detail)
                raise ChallengeError(f"Challenge failed: {detail}")

        raise ChallengeError("Authorization timeout")

    async def _poll_order(self, order: dict, order_url: str) -> dict:
        for _ in range(self.poll_attempts):
            status = order.get("status")
            if status == "valid":
                return order
            if status == "invalid":
                raise IssuanceError("Order invalid")
            await asyncio.sleep(self.poll_interval)
            order, _ = await self._acme_request(order_url, None)

        if order.get("status") == "valid":
            return order
        raise IssuanceError("Order finalization timeout")

    @staticmethod
    def _build_csr(domain: str) -> tuple[rsa.RSAPrivateKey, str]:
        cert_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
        )
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(
                x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
            )
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(domain)]),
                critical=False,
            )
            .sign(cert_key, hashes.SHA256())
        )
        csr_der = csr.public_bytes(serialization.Encoding.DER)
        return cert_key, jose.json_util.encode_b64jose(csr_der)

    @staticmethod
    def _make_bundle(fullchain_pem: str, cert_key: rsa.RSAPrivateKey) -> CertificateBundle:
        marker = "-----END CERTIFICATE-----"
        if marker not in fullchain_pem:
            raise IssuanceError("Certificate authority returned no certificate")

        certs = fullchain_pem.split(marker)
        cert_pem = certs[0].strip() + "\n" + marker + "\n"
        chain_pem = marker.join(certs[1:]).strip()
        if chain_pem:
            chain_pem += "\n"

        key_pem = cert_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("utf-8")

        cert = x509.load_pem_x509_certificate(cert_pem.encode())
        return CertificateBundle(
            cert_pem=cert_pem,
            key_pem=key_pem,
            chain_pem=chain_pem,
            expires_at=cert.not_valid_after_utc.replace(tzinfo=None),
        )

    async def revoke_certificate(self, cert_pem: str, email: str) -> bool:
        """
        Revoke a certificate.

        Args:
            cert_pem: PEM-encoded certificate to revoke
            email: ACME account contact email

        Returns:
            True if successful
        """
        try:
            await self.initialize(email)

            cert = x509.load_pem_x509_certificate(cert_pem.encode())
            cert_der = cert.public_bytes(serialization.Encoding.DER)
            payload = {"certificate": jose.json_util.encode_b64jose(cert_der)}
            await self._acme_request(self.directory["revokeCert"], payload)

            logger.info("[SSLTUNNEL-ACME] Certificate revoked successfully")
            return True

        except (IssuanceError, httpx.HTTPError, ValueError) as e:
            logger.error("[SSLTUNNEL-ACME] Failed to revoke certificate: %s", e)
            return False
