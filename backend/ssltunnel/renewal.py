"""
Automatic renewal of the tunnel certificate.

Provides a background task that checks certificate expiry and runs the
lifecycle manager's renew flow before the certificate expires.
"""
import asyncio
import logging
from typing import Optional

from .lifecycle import CertificateLifecycleManager


logger = logging.getLogger(__name__)


async def check_and_renew_certificate(
    manager: CertificateLifecycleManager,
) -> tuple[bool, Optional[str]]:
    """
    Check if the certificate needs renewal and renew if necessary.

    Returns:
        Tuple of (renewed, error_message)
    """
    token = await asyncio.to_thread(manager.settings_store.load)
    if token is None:
        logger.info("[SSLTUNNEL-RENEWAL] No tunnel token, skipping renewal check")
        return False, None

    storage = manager.certificate_store
    threshold = manager.config.renew_days_before_expiry

    info = await asyncio.to_thread(storage.get_certificate_info)
    if info and info.is_valid:
        days_left = info.days_until_expiry()
        logger.info("[SSLTUNNEL-RENEWAL] Certificate expires in %s days", days_left)

        if days_left > threshold:
            logger.debug(
                "[SSLTUNNEL-RENEWAL] Certificate renewal not needed yet (%s days left, threshold is %s)",
                days_left, threshold,
            )
            return False, None

        logger.info(
            "[SSLTUNNEL-RENEWAL] Certificate expires in %s days, initiating renewal (threshold: %s days)",
            days_left, threshold,
        )
    else:
        logger.warning("[SSLTUNNEL-RENEWAL] No usable certificate on disk, initiating renewal")

    await manager.renew()

    error = manager.renewal_status.last_error
    if error:
        return False, error
    return True, None


async def certificate_renewal_task(
    manager: CertificateLifecycleManager,
    check_interval: int = 86400,
) -> None:
    """
    Background task that periodically checks and renews the certificate.

    Args:
        manager: Lifecycle manager for the installation
        check_interval: Interval between checks in seconds (default: 24 hours)
    """
    logger.info(
        "[SSLTUNNEL-RENEWAL] Certificate renewal task started (checking every %s seconds)",
        check_interval,
    )

    while True:
        try:
            renewed, error = await check_and_renew_certificate(manager)

            if renewed:
                logger.info("[SSLTUNNEL-RENEWAL] Certificate was renewed by background task")
            elif error:
                logger.warning("[SSLTUNNEL-RENEWAL] Certificate renewal check failed: %s", error)

        except asyncio.CancelledError:
            logger.info("[SSLTUNNEL-RENEWAL] Certificate renewal task cancelled")
            break
        except Exception as e:
            logger.exception("[SSLTUNNEL-RENEWAL] Error in certificate renewal task: %s", e)

        await asyncio.sleep(check_interval)


class RenewalScheduler:
    """
    Manager for the certificate renewal background task.

    Provides methods to start, stop, and trigger renewal.
    """

    def __init__(self, manager: CertificateLifecycleManager):
        self.manager = manager
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        """Check if the renewal task is running."""
        return self._task is not None and not self._task.done()

    def start(self, check_interval: Optional[int] = None) -> None:
        """
        Start the certificate renewal background task.

        Args:
            check_interval: Interval between checks in seconds (config value if omitted)
        """
        if self.is_running:
            logger.warning("[SSLTUNNEL-RENEWAL] Renewal task already running")
            return

        interval = check_interval or self.manager.config.renewal_check_interval
        self._task = asyncio.create_task(
            certificate_renewal_task(self.manager, interval)
        )
        logger.info("[SSLTUNNEL-RENEWAL] Certificate renewal scheduler started")

    async def stop(self) -> None:
        """Stop the certificate renewal background task."""
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("[SSLTUNNEL-RENEWAL] Certificate renewal scheduler stopped")
        self._task = None

    async def trigger_renewal(self) -> None:
        """Manually trigger a certificate renewal."""
        await self.manager.renew()
