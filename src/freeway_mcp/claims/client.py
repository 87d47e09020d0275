"""Content claims service client.

The service answers ``GET /claims/multihash/{base58btc multihash}`` with a
CAR. Every block in that CAR is itself a small CAR archive of one signed
UCAN delegation whose root is ``{"ucan@0.9.1": <link>}``. The first
capability of the delegation carries the claim: ``can`` names the claim
type and ``nb`` holds its fields. Signatures are not verified here.

``walk`` asks the service to follow ``parts`` and ``includes`` links
server-side, so one request returns the partition, inclusion and location
claims needed to locate every block of a DAG.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, Protocol

import dag_cbor
import httpx
from multiformats import CID, multibase

from freeway_mcp.codec.car import parse_car, read_car
from freeway_mcp.errors import ClaimsFetchError, DecodeError
from freeway_mcp.logging_config import StructuredLogger
from freeway_mcp.models import (
    ByteRange,
    Claim,
    ClaimType,
    EqualsClaim,
    InclusionClaim,
    LocationClaim,
    PartitionClaim,
    RelationClaim,
    cid_str,
    raw_cid,
)

logger = StructuredLogger(__name__)

WALK_PARTS = "parts"
WALK_INCLUDES = "includes"
DEFAULT_WALK = (WALK_PARTS, WALK_INCLUDES)

UCAN_VARIANT_PREFIX = "ucan@"


class ClaimsReader(Protocol):
    """Anything that can list the claims about a CID."""

    async def read(self, cid: CID, *, walk: Sequence[str] = ()) -> list[Claim]:
        ...


def _link(value: Any, field: str) -> CID:
    """Claim fields hold either a CID link or ``{"digest": multihash}``."""
    if isinstance(value, CID):
        return value
    if isinstance(value, dict) and isinstance(value.get("digest"), bytes):
        try:
            return raw_cid(value["digest"])
        except (ValueError, KeyError) as e:
            raise DecodeError(f"Claim field '{field}' has a malformed digest: {e}") from e
    raise DecodeError(f"Claim field '{field}' is not a link", value=type(value).__name__)


def _optional_link(nb: dict[str, Any], field: str) -> CID | None:
    value = nb.get(field)
    return None if value is None else _link(value, field)


def claim_from_capability(can: str, nb: dict[str, Any]) -> Claim | None:
    """Build a claim from a capability, None for unknown capabilities."""
    try:
        claim_type = ClaimType(can)
    except ValueError:
        return None

    content = _link(nb.get("content"), "content")
    if claim_type is ClaimType.LOCATION:
        locations = nb.get("location") or []
        if not isinstance(locations, list) or not all(isinstance(u, str) for u in locations):
            raise DecodeError(
                "Location claim URLs are not a list of strings", content=cid_str(content)
            )
        if not locations:
            raise DecodeError("Location claim has no URLs", content=cid_str(content))
        range_ = nb.get("range")
        byte_range = None
        if isinstance(range_, dict) and "offset" in range_:
            byte_range = ByteRange(offset=range_["offset"], length=range_.get("length"))
        return LocationClaim(content=content, location=locations, range=byte_range)
    if claim_type is ClaimType.PARTITION:
        return PartitionClaim(
            content=content,
            parts=[_link(p, "parts") for p in nb.get("parts") or []],
            blocks=_optional_link(nb, "blocks"),
        )
    if claim_type is ClaimType.INCLUSION:
        return InclusionClaim(
            content=content,
            includes=_link(nb.get("includes"), "includes"),
            proof=_optional_link(nb, "proof"),
        )
    if claim_type is ClaimType.RELATION:
        return RelationClaim(
            content=content,
            children=[_link(c, "children") for c in nb.get("children") or []],
        )
    return EqualsClaim(content=content, equals=_link(nb.get("equals"), "equals"))


def decode_claim(archive: bytes) -> Claim | None:
    """Decode one archived delegation into a claim.

    Raises:
        DecodeError: If the archive or delegation is malformed.
    """
    car = parse_car(archive)
    if not car.roots:
        raise DecodeError("Delegation archive has no root")
    root_bytes = car.get(car.roots[0])
    if root_bytes is None:
        raise DecodeError("Delegation archive root block missing")

    try:
        variant = dag_cbor.decode(root_bytes)
        if not isinstance(variant, dict):
            raise DecodeError("Delegation archive root is not a map")
        ucan_link = next(
            (v for k, v in variant.items() if k.startswith(UCAN_VARIANT_PREFIX)), None
        )
        if not isinstance(ucan_link, CID):
            raise DecodeError("Delegation archive root has no UCAN link")
        ucan_bytes = car.get(ucan_link)
        if ucan_bytes is None:
            raise DecodeError("Delegation block missing from archive", cid=cid_str(ucan_link))
        ucan = dag_cbor.decode(ucan_bytes)
    except ValueError as e:
        raise DecodeError(f"Malformed delegation: {e}") from e

    capabilities = ucan.get("att") if isinstance(ucan, dict) else None
    if not isinstance(capabilities, list) or not capabilities:
        raise DecodeError("Delegation has no capabilities")
    capability = capabilities[0]
    if not isinstance(capability, dict):
        raise DecodeError("Delegation capability is not a map")
    can = capability.get("can", "")
    nb = capability.get("nb") or {}
    if not isinstance(can, str) or not isinstance(nb, dict):
        raise DecodeError("Delegation capability is malformed", can=type(can).__name__)
    return claim_from_capability(can, nb)


class ContentClaimsClient:
    """HTTP client for a content claims service."""

    def __init__(self, service_url: str, client: httpx.AsyncClient):
        self.service_url = service_url.rstrip("/")
        self._client = client

    def claims_url(self, cid: CID) -> str:
        key = multibase.encode(bytes(cid.digest), "base58btc")
        return f"{self.service_url}/claims/multihash/{key}"

    async def read(self, cid: CID, *, walk: Sequence[str] = DEFAULT_WALK) -> list[Claim]:
        """Read every claim about ``cid`` (and, with ``walk``, related CIDs).

        Returns:
            Claims in response order; empty if the service knows nothing.

        Raises:
            ClaimsFetchError: On transport errors, unexpected statuses or an
                undecodable response CAR.
        """
        url = self.claims_url(cid)
        params = {"walk": ",".join(walk)} if walk else None
        claims: list[Claim] = []
        skipped = 0
        try:
            async with self._client.stream("GET", url, params=params) as response:
                if response.status_code == 404:
                    return []
                if not response.is_success:
                    raise ClaimsFetchError(
                        f"Claims service returned HTTP {response.status_code}",
                        cid=cid_str(cid),
                        url=url,
                    )
                async for block in read_car(response.aiter_bytes()):
                    try:
                        claim = decode_claim(block.data)
                    except DecodeError as e:
                        skipped += 1
                        logger.warning(
                            f"Skipping undecodable claim: {e.message}",
                            cid=cid,
                            block=cid_str(block.cid),
                        )
                        continue
                    if claim is not None:
                        claims.append(claim)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ClaimsFetchError(
                f"Claims request failed: {e}", cid=cid_str(cid), url=url
            ) from e
        except DecodeError as e:
            raise ClaimsFetchError(
                f"Malformed claims response: {e.message}", cid=cid_str(cid), url=url
            ) from e

        logger.debug(
            "Read claims",
            cid=cid,
            claims=len(claims),
            skipped=skipped,
            walk=list(walk),
        )
        return claims
