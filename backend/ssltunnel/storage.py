"""
Certificate storage and validation.

The certificate, private key and chain are written as one bundle. Each
bundle goes into its own ``archive/<version>/`` directory and becomes
current by atomically repointing the ``live`` symlink. The fixed paths
``certificate.pem``, ``privatekey.pem`` and ``chain.pem`` are symlinks into
``live/``, so readers always see three artifacts from the same issuance.
"""
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from .errors import PersistenceError


logger = logging.getLogger(__name__)

CERTIFICATE_FILE = "certificate.pem"
PRIVATE_KEY_FILE = "privatekey.pem"
CHAIN_FILE = "chain.pem"

# File name -> permissions
BUNDLE_FILES = {
    CERTIFICATE_FILE: 0o640,
    PRIVATE_KEY_FILE: 0o600,
    CHAIN_FILE: 0o640,
}

ARCHIVE_DIR = "archive"
LIVE_LINK = "live"
VERSION_PREFIX = "bundle-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class CertificateBundle:
    """Certificate, private key and chain from a single issuance."""

    cert_pem: str
    key_pem: str
    chain_pem: str
    expires_at: Optional[datetime] = None


@dataclass
class CertificateInfo:
    """Information extracted from a certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    domains: list[str]  # Subject CN + SANs
    is_valid: bool
    validation_error: Optional[str] = None

    def days_until_expiry(self) -> int:
        """Get days until certificate expires."""
        delta = self.not_after - _utcnow()
        return max(0, delta.days)

    def is_expired(self) -> bool:
        """Check if certificate is expired."""
        return _utcnow() > self.not_after


def _invalid_info(error: str) -> CertificateInfo:
    return CertificateInfo(
        subject="",
        issuer="",
        serial_number="",
        not_before=datetime.min,
        not_after=datetime.min,
        domains=[],
        is_valid=False,
        validation_error=error,
    )


class CertificateStore:
    """Manages the certificate bundle on disk."""

    def __init__(self, ssl_dir: Path, keep_versions: int = 2):
        """
        Args:
            ssl_dir: Directory holding the bundle
            keep_versions: Number of archived bundles to keep
        """
        self.ssl_dir = Path(ssl_dir)
        self.keep_versions = max(1, keep_versions)
        self.archive_dir = self.ssl_dir / ARCHIVE_DIR
        self.live_path = self.ssl_dir / LIVE_LINK
        self.cert_path = self.ssl_dir / CERTIFICATE_FILE
        self.key_path = self.ssl_dir / PRIVATE_KEY_FILE
        self.chain_path = self.ssl_dir / CHAIN_FILE

    def ensure_directory(self) -> None:
        """Ensure the SSL and archive directories exist with proper permissions."""
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.ssl_dir, 0o700)

    def write(self, bundle: CertificateBundle) -> None:
        """
        Replace the stored bundle. Either all three artifacts change or none do.

        Raises:
            PersistenceError: If the bundle is inconsistent or cannot be written
        """
        cert_pem = bundle.cert_pem.encode("utf-8")
        key_pem = bundle.key_pem.encode("utf-8")
        chain_pem = (bundle.chain_pem or "").encode("utf-8")

        # Validate cert/key pair before touching the disk
        validation = self.validate_pair(cert_pem, key_pem)
        if not validation.is_valid:
            raise PersistenceError(
                f"Certificate validation failed: {validation.validation_error}"
            )

        version_dir = None
        try:
            self.ensure_directory()
            version_dir = self._next_version_dir()
            version_dir.mkdir(mode=0o700)

            contents = {
                CERTIFICATE_FILE: cert_pem,
                PRIVATE_KEY_FILE: key_pem,
                CHAIN_FILE: chain_pem,
            }
            for name, mode in BUNDLE_FILES.items():
                self._write_file(version_dir / name, contents[name], mode)
            self._fsync_dir(version_dir)

            self._swap_live(version_dir)
        except OSError as e:
            logger.error("[SSLTUNNEL-STORAGE] Failed to save certificate: %s", e)
            if version_dir is not None and self._live_target() != version_dir.name:
                shutil.rmtree(version_dir, ignore_errors=True)
            raise PersistenceError(f"Failed to save certificate: {e}") from e

        # The new bundle is live from here on; links are retried on the next write
        try:
            self._fsync_dir(self.ssl_dir)
            self._ensure_links()
        except OSError as e:
            logger.warning(
                "[SSLTUNNEL-STORAGE] Bundle %s is live but updating links failed: %s",
                version_dir.name, e,
            )

        self._prune()
        logger.info("[SSLTUNNEL-STORAGE] Certificate saved to %s (%s)", self.cert_path, version_dir.name)

    def _next_version_dir(self) -> Path:
        versions = self._versions()
        number = versions[-1][0] + 1 if versions else 1
        return self.archive_dir / f"{VERSION_PREFIX}{number:04d}"

    def _versions(self) -> list[tuple[int, str]]:
        """Archived bundle versions, oldest first."""
        if not self.archive_dir.is_dir():
            return []
        versions = []
        for entry in self.archive_dir.iterdir():
            suffix = entry.name[len(VERSION_PREFIX):]
            if entry.name.startswith(VERSION_PREFIX) and suffix.isdigit():
                versions.append((int(suffix), entry.name))
        return sorted(versions)

    @staticmethod
    def _write_file(path: Path, data: bytes, mode: int) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(path, mode)

    @staticmethod
    def _fsync_dir(path: Path) -> None:
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    @staticmethod
    def _replace_symlink(link: Path, target: str) -> None:
        """Atomically point link at target."""
        tmp = link.with_name(f".{link.name}.tmp")
        if os.path.lexists(tmp):
            os.unlink(tmp)
        os.symlink(target, tmp)
        os.replace(tmp, link)

    def _swap_live(self, version_dir: Path) -> None:
        self._replace_symlink(self.live_path, os.path.join(ARCHIVE_DIR, version_dir.name))

    def _live_target(self) -> Optional[str]:
        """Name of the archived version live points at."""
        if not os.path.islink(self.live_path):
            return None
        return os.path.basename(os.readlink(self.live_path))

    def _ensure_links(self) -> None:
        """Point the fixed artifact paths into live/ (migrates plain files)."""
        for name in BUNDLE_FILES:
            link = self.ssl_dir / name
            target = os.path.join(LIVE_LINK, name)
            if os.path.islink(link) and os.readlink(link) == target:
                continue
            self._replace_symlink(link, target)

    def _prune(self) -> None:
        """Remove archived bundles beyond keep_versions, never the live one."""
        live = self._live_target()
        stale = [name for _, name in self._versions() if name != live]
        excess = len(stale) - (self.keep_versions - 1)
        for name in stale[:max(0, excess)]:
            try:
                shutil.rmtree(self.archive_dir / name)
                logger.debug("[SSLTUNNEL-STORAGE] Pruned archived bundle %s", name)
            except OSError as e:
                logger.warning("[SSLTUNNEL-STORAGE] Failed to prune %s: %s", name, e)

    def load_bundle(self) -> Optional[CertificateBundle]:
        """Load the current bundle, or None if there is none."""
        if not self.has_certificate():
            return None
        try:
            cert_pem = self.cert_path.read_text()
            key_pem = self.key_path.read_text()
            chain_pem = self.chain_path.read_text() if self.chain_path.exists() else ""
        except OSError as e:
            logger.error("[SSLTUNNEL-STORAGE] Failed to load certificate: %s", e)
            return None

        info = self.parse_certificate(cert_pem.encode())
        return CertificateBundle(
            cert_pem=cert_pem,
            key_pem=key_pem,
            chain_pem=chain_pem,
            expires_at=info.not_after if info.is_valid else None,
        )

    def has_certificate(self) -> bool:
        """Check if a certificate exists."""
        return self.cert_path.exists() and self.key_path.exists()

    def get_certificate_info(self) -> Optional[CertificateInfo]:
        """Get info about the stored certificate."""
        if not self.cert_path.exists():
            return None
        try:
            cert_pem = self.cert_path.read_bytes()
        except OSError as e:
            logger.error("[SSLTUNNEL-STORAGE] Failed to read certificate: %s", e)
            return None
        return self.parse_certificate(cert_pem)

    def is_expiring_soon(self, days: int = 14) -> bool:
        """Check if certificate expires within N days."""
        info = self.get_certificate_info()
        if not info or not info.is_valid:
            return False
        return info.days_until_expiry() <= days

    def validate_pair(self, cert_pem: bytes, key_pem: bytes) -> CertificateInfo:
        """
        Validate that certificate and key form a valid pair.

        Returns:
            CertificateInfo with validation result
        """
        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
            try:
                key = serialization.load_pem_private_key(key_pem, password=None)
            except (ValueError, TypeError) as e:
                raise ValueError(f"Cannot load private key: {e}") from e

            cert_public_key = cert.public_key()

            if isinstance(cert_public_key, rsa.RSAPublicKey) and isinstance(
                key, rsa.RSAPrivateKey
            ):
                if cert_public_key.public_numbers() != key.public_key().public_numbers():
                    raise ValueError("RSA private key does not match certificate")
            elif isinstance(cert_public_key, ec.EllipticCurvePublicKey) and isinstance(
                key, ec.EllipticCurvePrivateKey
            ):
                if cert_public_key.public_numbers() != key.public_key().public_numbers():
                    raise ValueError("EC private key does not match certificate")
            else:
                raise ValueError(
                    f"Unsupported key type: cert={type(cert_public_key)}, key={type(key)}"
                )

            return self.parse_certificate(cert_pem)

        except ValueError as e:
            logger.error("[SSLTUNNEL-STORAGE] Certificate validation failed: %s", e)
            return _invalid_info(str(e))

    def parse_certificate(self, cert_pem: bytes) -> CertificateInfo:
        """Parse a PEM certificate and extract info."""
        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as e:
            logger.error("[SSLTUNNEL-STORAGE] Failed to parse certificate: %s", e)
            return _invalid_info(str(e))

        subject_cn = ""
        cn_attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if cn_attrs:
            subject_cn = str(cn_attrs[0].value)

        issuer_cn = ""
        cn_attrs = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        if cn_attrs:
            issuer_cn = str(cn_attrs[0].value)

        domains = [subject_cn] if subject_cn else []
        try:
            san_ext = cert.extensions.get_extension_for_oid(
                x509.oid.ExtensionOID.SUBJECT_ALTERNATIVE_NAME
            )
            for name in san_ext.value.get_values_for_type(x509.DNSName):
                if name not in domains:
                    domains.append(name)
        except x509.ExtensionNotFound as e:
            logger.debug("[SSLTUNNEL-STORAGE] Suppressed SAN extension lookup: %s", e)

        return CertificateInfo(
            subject=subject_cn,
            issuer=issuer_cn,
            serial_number=format(cert.serial_number, "x"),
            not_before=cert.not_valid_before_utc.replace(tzinfo=None),
            not_after=cert.not_valid_after_utc.replace(tzinfo=None),
            domains=domains,
            is_valid=True,
        )
