"""Background expiry sweep."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .manager import LeaseManager
from .models import Lease

if TYPE_CHECKING:
    from ..credentials.issuer import CredentialIssuer

logger = logging.getLogger(__name__)


class LeaseSweeper:
    """Runs ``LeaseManager.sweep`` on a timer, independent of request handling.

    Only leases the sweep itself transitioned have their credential revoked,
    so a lease closed concurrently by check-in or revocation is never revoked
    twice.
    """

    def __init__(
        self,
        manager: LeaseManager,
        issuer: CredentialIssuer,
        interval_seconds: float = 15.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._manager = manager
        self._issuer = issuer
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> list[Lease]:
        closed = await self._manager.sweep()
        for lease in closed:
            if not lease.credential_ref:
                continue
            # Swept leases are already terminal; a failure here must not skip the rest.
            try:
                await self._issuer.revoke(lease)
            except Exception:
                logger.exception("Revoking credential of swept lease %s failed", lease.lease_id)
        return closed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Lease sweep cycle failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="lease-sweeper")
        logger.info("Lease sweeper started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Lease sweeper stopped")
