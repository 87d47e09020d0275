"""Claim graph resolver: CID -> (CAR location, byte offset).

Large DAGs are stored as several CAR parts. A partition claim lists the
parts of a root, an inclusion claim points each part at its
MultihashIndexSorted index, and location claims say where the parts and
indexes can be fetched. Joining the three yields an ``IndexEntry`` for every
block in every part.

Index lifecycle:
1. First ``resolve`` of a CID reads its claims (walking parts and includes),
   fetches each part's index and caches an entry per indexed block.
2. Later lookups of any block in those parts are cache hits. Raw-codec hits
   return straight away since raw blocks have no links to discover.
3. The instance is scoped to one resolution session and is then discarded.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass

import httpx
from multiformats import CID

from freeway_mcp.claims.client import DEFAULT_WALK, ClaimsReader
from freeway_mcp.codec.index import decode_index
from freeway_mcp.errors import IndexDecodeError
from freeway_mcp.logging_config import StructuredLogger
from freeway_mcp.models import (
    Claim,
    InclusionClaim,
    IndexEntry,
    LocationClaim,
    PartFailure,
    PartitionClaim,
    ResolutionReport,
    ResolutionStatus,
    cid_key,
    cid_str,
    is_raw,
)

logger = StructuredLogger(__name__)


@dataclass
class _PartOutcome:
    part: CID
    entries: list[IndexEntry]
    failure: PartFailure | None = None


class ContentClaimsIndex:
    """Resolves CIDs to index entries using content claims.

    Concurrency Model:
    - All state is owned by one instance (one resolution session)
    - The cache and the claim-fetched set only ever grow
    - Concurrent discovery of the same CID shares one in-flight task
    """

    def __init__(self, claims: ClaimsReader, client: httpx.AsyncClient):
        self._claims = claims
        self._client = client
        # multihash -> entry; never overwritten once set
        self._cache: dict[bytes, IndexEntry] = {}
        # multihash -> report, for CIDs whose claims were read (not every
        # cached CID: reading one CID's claims caches entries for many)
        self._claims_fetched: dict[bytes, ResolutionReport] = {}
        self._inflight: dict[bytes, asyncio.Task[ResolutionReport]] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def claims_fetched_count(self) -> int:
        return len(self._claims_fetched)

    def cached(self, cid: CID) -> IndexEntry | None:
        """Cached entry for ``cid`` without any network access."""
        return self._cache.get(cid_key(cid))

    def report(self, cid: CID) -> ResolutionReport | None:
        """Report from reading ``cid``'s claims, if that has happened."""
        return self._claims_fetched.get(cid_key(cid))

    async def resolve(self, cid: CID) -> IndexEntry | None:
        """Get the index entry for ``cid``, reading claims when needed.

        Returns:
            The entry, or None when no claims locate the block.
        """
        entry = self._cache.get(cid_key(cid))

        # Blocks at the bottom of the DAG are only found through their
        # parent's claims, so read claims for non-raw CIDs even on a hit.
        if entry is not None:
            if not is_raw(cid):
                await self.discover(cid)
            return entry

        await self.discover(cid)
        return self._cache.get(cid_key(cid))

    async def discover(self, cid: CID) -> ResolutionReport:
        """Read claims for ``cid`` once and cache every entry they lead to.

        Raises:
            ClaimsFetchError: If the claims service cannot be read. The CID
                is not marked as fetched, so a later call reads again.
        """
        key = cid_key(cid)
        report = self._claims_fetched.get(key)
        if report is not None:
            return report

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._read_claims(cid))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._discovery_done(key, t))
        # one waiter being cancelled must not cancel the others
        return await asyncio.shield(task)

    def _discovery_done(self, key: bytes, task: asyncio.Task[ResolutionReport]) -> None:
        self._inflight.pop(key, None)
        # mark the failure retrieved when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _read_claims(self, cid: CID) -> ResolutionReport:
        start_time = time.time()
        claims = await self._claims.read(cid, walk=DEFAULT_WALK)

        by_content: dict[bytes, list[Claim]] = defaultdict(list)
        for claim in claims:
            by_content[cid_key(claim.content)].append(claim)

        parts = self._collect_parts(cid, by_content)

        locations: dict[bytes, str] = {}
        for claim in claims:
            if isinstance(claim, LocationClaim):
                locations[cid_key(claim.content)] = claim.location[0]

        outcomes = await asyncio.gather(
            *(self._index_part(part, by_content, locations) for part in parts)
        )

        cached = 0
        failures = []
        indexed = []
        for outcome in outcomes:
            if outcome.failure is not None:
                failures.append(outcome.failure)
                continue
            indexed.append(cid_str(outcome.part))
            for entry in outcome.entries:
                if self._cache.setdefault(cid_key(entry.cid), entry) is entry:
                    cached += 1

        if not indexed:
            status = ResolutionStatus.EMPTY
        elif failures:
            status = ResolutionStatus.PARTIAL
        else:
            status = ResolutionStatus.COMPLETE

        report = ResolutionReport(
            cid=cid_str(cid),
            status=status,
            claims=len(claims),
            parts=[cid_str(p) for p in parts],
            indexed_parts=indexed,
            entries_cached=cached,
            failures=failures,
        )
        self._claims_fetched[cid_key(cid)] = report

        logger.info(
            "Read claims",
            cid=cid,
            duration_ms=int((time.time() - start_time) * 1000),
            status=status.value,
            claims=len(claims),
            parts=len(parts),
            entries_cached=cached,
        )
        return report

    def _collect_parts(
        self, cid: CID, by_content: dict[bytes, list[Claim]]
    ) -> list[CID]:
        """Parts of ``cid`` from its partition claims, else ``cid`` itself."""
        parts: dict[bytes, CID] = {}
        for claim in by_content.get(cid_key(cid), []):
            if isinstance(claim, PartitionClaim):
                for part in claim.parts:
                    parts.setdefault(cid_key(part), part)
        if not parts:
            return [cid]
        return list(parts.values())

    async def _index_part(
        self,
        part: CID,
        by_content: dict[bytes, list[Claim]],
        locations: dict[bytes, str],
    ) -> _PartOutcome:
        inclusion = next(
            (c for c in by_content.get(cid_key(part), []) if isinstance(c, InclusionClaim)),
            None,
        )
        if inclusion is None:
            return self._skip(part, "missing_inclusion", "missing inclusion claim for part")

        part_location = locations.get(cid_key(part))
        if part_location is None:
            return self._skip(part, "missing_part_location", "missing location claim for part")

        index_location = locations.get(cid_key(inclusion.includes))
        if index_location is None:
            return self._skip(
                part,
                "missing_index_location",
                "missing location claim for index",
                index=cid_str(inclusion.includes),
            )

        for url in (part_location, index_location):
            try:
                httpx.URL(url)
            except httpx.InvalidURL as e:
                return self._skip(
                    part,
                    "invalid_location",
                    "invalid location URL",
                    index=cid_str(inclusion.includes),
                    url=url,
                    error=str(e),
                )

        try:
            async with self._client.stream("GET", index_location) as response:
                if not response.is_success:
                    return self._skip(
                        part,
                        "index_fetch",
                        "failed to fetch index",
                        index=cid_str(inclusion.includes),
                        url=index_location,
                        status=response.status_code,
                    )
                entries = [
                    entry
                    async for entry in decode_index(response.aiter_bytes(), part_location)
                ]
        except httpx.HTTPError as e:
            return self._skip(
                part,
                "index_fetch",
                "failed to fetch index",
                index=cid_str(inclusion.includes),
                url=index_location,
                error=str(e),
            )
        except IndexDecodeError as e:
            return self._skip(
                part,
                "index_decode",
                "failed to decode index",
                index=cid_str(inclusion.includes),
                url=index_location,
                error=e.message,
            )

        logger.debug(
            "Decoded part index",
            cid=part,
            index=cid_str(inclusion.includes),
            entries=len(entries),
        )
        return _PartOutcome(part=part, entries=entries)

    def _skip(self, part: CID, reason: str, message: str, **detail: object) -> _PartOutcome:
        logger.warning(f"{message}: {cid_str(part)}", cid=part, reason=reason, **detail)
        detail_text = ", ".join(f"{k}={v}" for k, v in detail.items()) or None
        return _PartOutcome(
            part=part,
            entries=[],
            failure=PartFailure(part=cid_str(part), reason=reason, detail=detail_text),
        )
