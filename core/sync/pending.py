"""
Pending Delete Registry.

Tracks deletes sent to the remote side that await a confirm or cancel
decision. A decision that never arrives expires after a fixed timeout and
counts as confirmed.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Tuple

from ..models.files import DeleteOrigin, PendingDelete
from .paths import canonical_file_name

logger = logging.getLogger(__name__)

DEFAULT_PENDING_DELETE_TIMEOUT_S = 30.0


class PendingDeleteRegistry:
    """
    File name -> (PendingDelete, Future[bool]).

    ``True`` means the delete may proceed, ``False`` that it was rejected
    or abandoned (for example on disconnect).
    """

    def __init__(self, timeout_s: float = DEFAULT_PENDING_DELETE_TIMEOUT_S):
        self.timeout_s = timeout_s
        self._pending: Dict[str, Tuple[PendingDelete, asyncio.Future]] = {}
        self._expired_count = 0

    def request(
        self,
        file_names: Iterable[str],
        origin: DeleteOrigin = DeleteOrigin.LOCAL,
        require_confirmation: bool = True
    ) -> Dict[str, asyncio.Future]:
        """
        Register deletes awaiting a decision.

        A name that is already pending keeps its existing entry.

        Returns:
            File name -> future resolved with the decision
        """
        loop = asyncio.get_running_loop()
        futures: Dict[str, asyncio.Future] = {}

        for name in file_names:
            key = canonical_file_name(name)
            existing = self._pending.get(key)
            if existing is not None and not existing[1].done():
                futures[name] = existing[1]
                continue

            entry = PendingDelete(file_name=key, origin=origin, require_confirmation=require_confirmation)
            future = loop.create_future()
            self._pending[key] = (entry, future)
            futures[name] = future
            logger.debug(f"Awaiting delete confirmation: {key}")

        return futures

    async def wait_for_decisions(self, file_names: Iterable[str]) -> List[str]:
        """
        Wait until every named delete is decided or has expired.

        Returns:
            Names whose delete may proceed (confirmed or expired)
        """
        confirmed, _ = await self.wait_for_outcomes(file_names)
        return confirmed

    async def wait_for_outcomes(self, file_names: Iterable[str]) -> Tuple[List[str], List[str]]:
        """
        Like ``wait_for_decisions``, also reporting which names expired.

        Returns:
            (names whose delete may proceed, the subset that expired)
        """
        waiting = {}
        for name in file_names:
            entry = self._pending.get(canonical_file_name(name))
            if entry is not None:
                waiting[name] = entry[1]

        if not waiting:
            return [], []

        expired: List[str] = []
        _, not_done = await asyncio.wait(set(waiting.values()), timeout=self.timeout_s)
        for name, future in waiting.items():
            if future in not_done and not future.done():
                self._expired_count += 1
                expired.append(name)
                logger.info(f"No delete decision for {name} within {self.timeout_s}s, proceeding")
                future.set_result(True)

        confirmed = []
        for name, future in waiting.items():
            key = canonical_file_name(name)
            entry = self._pending.get(key)
            if entry is not None and entry[1] is future:
                del self._pending[key]
            if not future.cancelled() and future.result():
                confirmed.append(name)
        return confirmed, expired

    def resolve(self, file_name: str, confirmed: bool) -> bool:
        """
        Resolve a pending delete with the remote decision.

        Returns:
            False if nothing was pending for ``file_name``
        """
        key = canonical_file_name(file_name)
        entry = self._pending.get(key)
        if entry is None or entry[1].done():
            logger.debug(f"Unexpected delete decision for {key}")
            return False

        entry[1].set_result(confirmed)
        logger.debug(f"Delete {'confirmed' if confirmed else 'cancelled'}: {key}")
        return True

    def cancel_all(self) -> int:
        """Resolve every pending delete as rejected; returns how many were pending."""
        count = 0
        for key, (_, future) in list(self._pending.items()):
            if not future.done():
                future.set_result(False)
                count += 1
                logger.debug(f"Cancelled pending delete: {key}")
        self._pending.clear()
        return count

    def snapshot(self) -> List[PendingDelete]:
        return [entry for entry, future in self._pending.values() if not future.done()]

    @property
    def expired_count(self) -> int:
        return self._expired_count

    def __len__(self) -> int:
        return sum(1 for _, future in self._pending.values() if not future.done())

    def __contains__(self, file_name: str) -> bool:
        entry = self._pending.get(canonical_file_name(file_name))
        return entry is not None and not entry[1].done()
