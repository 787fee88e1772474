"""Single-flight coalescing of backing-store lookups.

When many requests for the same uncached slug arrive together, only the
first one (the *leader*) queries the store. Everyone else (the *followers*)
awaits the leader's future. The pending entry is removed as soon as the
fetch settles, whatever the outcome, so failures are never cached and the
next request after a failure retries.

Flow Diagram — fetch()
======================
::
    ┌─────────────┐
    │ fetch(slug) │
    └──────┬──────┘
           ▼
    ┌─────────────┐  YES   ┌──────────────────┐
    │ pending for │───────►│ await shared     │──► CoalescedLookup(leader=False)
    │ slug?       │        │ future (shielded)│
    └──────┬──────┘        └──────────────────┘
           │ NO
           ▼
    ┌─────────────┐
    │ register    │
    │ future      │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ store fetch │──► settle future ──► remove entry (finally)
    └─────────────┘                     └► CoalescedLookup(leader=True)

The map is per process. It relies on the event loop never interleaving two
coroutines between the lookup and the insert below (there is no ``await``
in between); a threaded port would need a lock around it.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from prometheus_client import Counter

from redirector.exceptions import BackendLookupFailure
from redirector.schemas import ShortLinkRecord

__all__ = ["CoalescedLookup", "LookupCoalescer", "RecordSource"]

logger = logging.getLogger("redirector.coalescer")

COALESCER_FETCHES_TOTAL = Counter(
    "redirector_coalescer_fetches_total",
    "Backing store fetches started by the coalescer",
)
COALESCER_FOLLOWERS_TOTAL = Counter(
    "redirector_coalescer_followers_total",
    "Lookups that joined an in-flight fetch instead of querying the store",
)


class RecordSource(Protocol):
    async def get_record(self, slug: str) -> Optional[ShortLinkRecord]: ...


@dataclass(frozen=True)
class CoalescedLookup:
    record: Optional[ShortLinkRecord]
    leader: bool


class LookupCoalescer:
    def __init__(self, store: RecordSource):
        self._store = store
        self._pending: dict[str, asyncio.Future] = {}

    def in_flight(self, slug: str) -> bool:
        return slug in self._pending

    async def fetch(self, slug: str) -> CoalescedLookup:
        pending = self._pending.get(slug)
        if pending is not None:
            COALESCER_FOLLOWERS_TOTAL.inc()
            logger.debug(f"Joining in-flight fetch for {slug}")
            record = await asyncio.shield(pending)
            return CoalescedLookup(record=record, leader=False)

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[slug] = future
        COALESCER_FETCHES_TOTAL.inc()

        try:
            record = await self._store.get_record(slug)
        except BaseException as exc:
            if isinstance(exc, asyncio.CancelledError):
                # followers were not cancelled; they see a failed lookup instead
                future.set_exception(BackendLookupFailure(f"Lookup for {slug} was cancelled"))
            else:
                future.set_exception(exc)
            # mark retrieved so an unobserved failure is not reported by the loop
            future.exception()
            raise
        else:
            future.set_result(record)
            return CoalescedLookup(record=record, leader=True)
        finally:
            if self._pending.get(slug) is future:
                del self._pending[slug]
