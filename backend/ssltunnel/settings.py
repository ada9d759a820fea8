"""
Persisted tunnel token.

The tunnel token is the only link between this installation and its
subdomain record on the registration service. It is stored as a single
``tunneltoken`` record in a JSON settings file.
"""
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from .errors import PersistenceError


logger = logging.getLogger(__name__)

TUNNEL_TOKEN_KEY = "tunneltoken"


class TunnelToken(BaseModel):
    """Binding between a local installation and its remote subdomain."""

    name: str  # Subdomain name (e.g., "mygateway")
    token: str  # Opaque token issued by the registration service
    issued_at: Optional[str] = None  # ISO format datetime

    def masked(self) -> str:
        """Token with all but the last four characters hidden, for logs."""
        return "***" + self.token[-4:]


class SettingsStore:
    """Stores the tunnel token in a JSON settings file. Last write wins."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_all(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.error("[SSLTUNNEL-SETTINGS] Failed to read settings file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.error("[SSLTUNNEL-SETTINGS] Settings file %s is not a JSON object", self.path)
            return {}
        return data

    def _write_all(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".settings-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            # Restrictive permissions, the file holds the tunnel token
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def save(self, token: TunnelToken) -> TunnelToken:
        """
        Persist the tunnel token, replacing any previous one.

        Returns:
            The stored token (with issued_at filled in)

        Raises:
            PersistenceError: If the settings file cannot be written
        """
        if token.issued_at is None:
            token = token.model_copy(
                update={"issued_at": datetime.now(timezone.utc).isoformat()}
            )

        data = self._read_all()
        data[TUNNEL_TOKEN_KEY] = token.model_dump()
        try:
            self._write_all(data)
        except OSError as e:
            logger.error("[SSLTUNNEL-SETTINGS] Cannot save tunnel token to %s: %s", self.path, e)
            raise PersistenceError(f"Failed to save tunnel token: {e}") from e

        logger.info("[SSLTUNNEL-SETTINGS] Tunnel token saved for subdomain %s", token.name)
        return token

    def load(self) -> Optional[TunnelToken]:
        """Load the tunnel token, or None if it has not been set."""
        record = self._read_all().get(TUNNEL_TOKEN_KEY)
        if record is None:
            return None
        try:
            return TunnelToken(**record)
        except (TypeError, ValidationError) as e:
            logger.error("[SSLTUNNEL-SETTINGS] Stored tunnel token is invalid: %s", e)
            return None

    def clear(self) -> None:
        """Remove the tunnel token."""
        data = self._read_all()
        if TUNNEL_TOKEN_KEY not in data:
            return
        del data[TUNNEL_TOKEN_KEY]
        try:
            self._write_all(data)
        except OSError as e:
            raise PersistenceError(f"Failed to clear tunnel token: {e}") from e
        logger.info("[SSLTUNNEL-SETTINGS] Tunnel token cleared")
