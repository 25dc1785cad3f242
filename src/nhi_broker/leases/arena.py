"""Arena of immutable lease snapshots with per-lease compare-and-swap."""

from __future__ import annotations

import threading
from collections import OrderedDict

from .models import Lease, LeaseState


class LeaseArena:
    """Lease table indexed by id.

    The lock only guards dictionary updates and is never held across I/O.
    Writers read a snapshot, build the next version, and commit it with
    ``compare_and_swap``; the first writer to commit wins.
    """

    def __init__(self, archive_max_entries: int = 10_000) -> None:
        if archive_max_entries < 1:
            raise ValueError("archive_max_entries must be at least 1")
        self._lock = threading.Lock()
        self._live: dict[str, Lease] = {}
        self._by_pair: dict[tuple[str, str], set[str]] = {}
        self._fenced: set[str] = set()
        self._archive: OrderedDict[str, Lease] = OrderedDict()
        self._archive_max = archive_max_entries

    def get(self, lease_id: str) -> Lease | None:
        with self._lock:
            lease = self._live.get(lease_id)
            if lease is None:
                lease = self._archive.get(lease_id)
            return lease

    def live_leases(self) -> list[Lease]:
        with self._lock:
            return list(self._live.values())

    def live_for_pair(self, identity_id: str, profile_name: str) -> list[Lease]:
        with self._lock:
            ids = self._by_pair.get((identity_id, profile_name), set())
            return [self._live[lease_id] for lease_id in ids]

    def is_fenced(self, lease_id: str) -> bool:
        with self._lock:
            return lease_id in self._fenced

    def insert_if_capacity(self, lease: Lease, limit: int) -> bool:
        """Insert a new pending lease only if its pair holds fewer than ``limit``
        live (pending or active) leases. Check and insert are one atomic step."""
        if lease.state is not LeaseState.PENDING:
            raise ValueError("Only pending leases can be inserted")
        with self._lock:
            if lease.lease_id in self._live or lease.lease_id in self._archive:
                raise ValueError(f"Duplicate lease id: {lease.lease_id}")
            ids = self._by_pair.setdefault(lease.pair, set())
            if len(ids) >= limit:
                if not ids:
                    del self._by_pair[lease.pair]
                return False
            ids.add(lease.lease_id)
            self._live[lease.lease_id] = lease
            return True

    def compare_and_swap(
        self,
        lease_id: str,
        expected_version: int,
        new: Lease,
        *,
        fenced_ok: bool = False,
    ) -> bool:
        """Replace the stored lease if it is still at ``expected_version``.

        Fenced leases only accept writers that pass ``fenced_ok``.
        Terminal snapshots leave the live table for the archive.
        """
        if new.lease_id != lease_id:
            raise ValueError("Lease id mismatch")
        with self._lock:
            current = self._live.get(lease_id)
            if current is None or current.version != expected_version:
                return False
            if lease_id in self._fenced and not fenced_ok:
                return False

            if new.is_terminal:
                del self._live[lease_id]
                self._fenced.discard(lease_id)
                ids = self._by_pair.get(new.pair)
                if ids is not None:
                    ids.discard(lease_id)
                    if not ids:
                        del self._by_pair[new.pair]
                self._archive[lease_id] = new
                while len(self._archive) > self._archive_max:
                    self._archive.popitem(last=False)
            else:
                self._live[lease_id] = new
            return True

    def fence(self, lease_id: str) -> bool:
        """Reserve a live lease for revocation. Returns False if it is not live."""
        with self._lock:
            if lease_id not in self._live:
                return False
            self._fenced.add(lease_id)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._live)
