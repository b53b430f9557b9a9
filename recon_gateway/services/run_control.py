"""Per-account run locks and cooperative cancellation"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

from recon_gateway.config import settings
from recon_gateway.domain.exceptions import RunLockedError
from recon_gateway.domain.state import StateStore, lock_key

logger = logging.getLogger(__name__)


class CancellationToken:
    """Checked by the orchestrator between pages"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class RunRegistry:
    """
    Tracks in-flight runs of this process.

    An account lock is held in two places: an asyncio.Lock for runs in this
    process, and a lease in the state store (with TTL) so other workers
    sharing the store see it too.
    """

    def __init__(self, state: StateStore, lock_ttl: int | None = None):
        self.state = state
        self.lock_ttl = lock_ttl or settings.run_lock_ttl_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    def token_for(self, run_id: str) -> CancellationToken:
        return self._tokens.setdefault(run_id, CancellationToken())

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; False when the run is not executing here"""
        token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested", extra={"run_id": run_id})
        return True

    def release(self, run_id: str) -> None:
        self._tokens.pop(run_id, None)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._tokens

    @asynccontextmanager
    async def account_lock(self, account_id: str, run_id: str):
        """
        Hold the account's run lock for the duration of a run.

        Raises:
            RunLockedError: When another run holds the lock
        """
        lock = self._locks.setdefault(account_id, asyncio.Lock())
        try:
            if lock.locked():
                raise RunLockedError(f"another run in progress for account {account_id}")

            async with lock:
                key = lock_key(account_id)
                if not self.state.set_if_absent(key, run_id, ttl=self.lock_ttl):
                    holder = self.state.get(key)
                    raise RunLockedError(f"another run in progress for account {account_id} ({holder})")
                try:
                    yield
                finally:
                    if self.state.get(key) == run_id:
                        self.state.delete(key)
        finally:
            self.release(run_id)
