"""Test fixtures for freeway-mcp."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import AsyncGenerator

import dag_cbor
import httpx
import pytest
import pytest_asyncio
from multiformats import CID, multibase, multihash

from freeway_mcp.claims import ContentClaimsIndex
from freeway_mcp.codec.car import encode_car, encode_frame
from freeway_mcp.codec.index import encode_index
from freeway_mcp.config import ServerConfig
from freeway_mcp.models import (
    Claim,
    InclusionClaim,
    IndexEntry,
    LocationClaim,
    PartitionClaim,
    cid_key,
)
from freeway_mcp.server import FreewayServer, create_server

ORIGIN = "https://origin.test"


def make_cid(data: bytes, codec: str = "raw") -> CID:
    """CIDv1 of ``data`` under sha2-256."""
    return CID("base32", 1, codec, multihash.digest(data, "sha2-256"))


# --- Fake HTTP origin ---

class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in fixed-size chunks; records closing."""

    def __init__(self, data: bytes, chunk_size: int):
        self.data = data
        self.chunk_size = max(chunk_size, 1)
        self.bytes_sent = 0
        self.closed = False

    async def __aiter__(self):
        for i in range(0, len(self.data), self.chunk_size):
            chunk = self.data[i:i + self.chunk_size]
            self.bytes_sent += len(chunk)
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeOrigin:
    """In-memory HTTP origin serving objects with byte-range support."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.statuses: dict[str, int] = {}
        self.failures: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.streams: list[ChunkedStream] = []
        self.chunk_size: int | None = None

    def put(self, path: str, data: bytes) -> str:
        url = f"{ORIGIN}/{path}"
        self.objects[url] = data
        return url

    def requests_for(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url).split("?")[0] == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]

        if url in self.failures:
            raise httpx.ConnectError("connection refused", request=request)
        if url in self.statuses:
            return httpx.Response(self.statuses[url], request=request)

        data = self.objects.get(url)
        if data is None:
            return httpx.Response(404, request=request)

        status = 200
        range_header = request.headers.get("range")
        if range_header:
            start, end = range_header.removeprefix("bytes=").split("-")
            data = data[int(start):int(end) + 1]
            status = 206

        stream = ChunkedStream(data, self.chunk_size or len(data))
        self.streams.append(stream)
        return httpx.Response(status, stream=stream, request=request)


# --- Fake claims service ---

class FakeClaims:
    """ClaimsReader returning pre-registered claims and counting reads."""

    def __init__(self):
        self.claims: dict[bytes, list[Claim]] = defaultdict(list)
        self.calls: list[CID] = []
        self.delay = 0.0
        self.error: Exception | None = None

    def add(self, subject: CID, *claims: Claim) -> None:
        self.claims[cid_key(subject)].extend(claims)

    def calls_for(self, cid: CID) -> int:
        return sum(1 for c in self.calls if cid_key(c) == cid_key(cid))

    async def read(self, cid: CID, *, walk=()) -> list[Claim]:
        self.calls.append(cid)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            error, self.error = self.error, None
            raise error
        return list(self.claims.get(cid_key(cid), []))


class StaticIndex:
    """Stands in for ContentClaimsIndex with fixed entries."""

    def __init__(self, entries: dict[bytes, IndexEntry] | None = None):
        self.entries = entries or {}
        self.calls = 0

    async def resolve(self, cid: CID) -> IndexEntry | None:
        self.calls += 1
        return self.entries.get(cid_key(cid))


# --- Encoded claims responses ---

def claim_nb(claim: Claim) -> dict:
    if isinstance(claim, LocationClaim):
        return {"content": claim.content, "location": list(claim.location)}
    if isinstance(claim, PartitionClaim):
        return {"content": claim.content, "parts": list(claim.parts)}
    if isinstance(claim, InclusionClaim):
        return {"content": claim.content, "includes": claim.includes}
    raise TypeError(f"unsupported claim {claim!r}")


def encode_delegation(can: str, nb: dict, att: list | None = None) -> bytes:
    """Archive a minimal UCAN delegation the way the claims service does.

    ``att`` replaces the capability list built from ``can`` and ``nb``.
    """
    ucan = {
        "v": "0.9.1",
        "iss": b"\xed\x01" + bytes(32),
        "aud": b"\xed\x01" + bytes(32),
        "s": bytes(66),
        "att": att if att is not None else [{"with": "did:web:claims.test", "can": can, "nb": nb}],
        "prf": [],
    }
    ucan_bytes = dag_cbor.encode(ucan)
    ucan_cid = make_cid(ucan_bytes, "dag-cbor")
    root_bytes = dag_cbor.encode({"ucan@0.9.1": ucan_cid})
    root_cid = make_cid(root_bytes, "dag-cbor")
    return encode_car([root_cid], [(root_cid, root_bytes), (ucan_cid, ucan_bytes)])


def encode_claims_response(archives: list[bytes]) -> bytes:
    blocks = [(make_cid(archive, "car"), archive) for archive in archives]
    return encode_car([cid for cid, _ in blocks], blocks)


def claims_path(cid: CID) -> str:
    return f"claims/multihash/{multibase.encode(bytes(cid.digest), 'base58btc')}"


# --- DAG layout ---

@dataclass
class Part:
    """One CAR part stored at the origin together with its index."""
    cid: CID
    url: str
    data: bytes
    index_cid: CID
    index_url: str
    blocks: list[tuple[CID, bytes]]
    offsets: dict[bytes, int] = field(default_factory=dict)

    def offset(self, cid: CID) -> int:
        return self.offsets[cid_key(cid)]


def build_part(origin: FakeOrigin, name: str, blocks: list[tuple[CID, bytes]]) -> Part:
    """Write a CAR of ``blocks`` and its MultihashIndexSorted to the origin."""
    car = bytearray(encode_car([blocks[0][0]], []))
    offsets = {}
    for cid, data in blocks:
        offsets[cid_key(cid)] = len(car)
        car += encode_frame(cid, data)
    car = bytes(car)

    index = encode_index([(bytes(cid.digest), offsets[cid_key(cid)]) for cid, _ in blocks])
    part_cid = make_cid(car, "car")
    index_cid = make_cid(index, "car")
    return Part(
        cid=part_cid,
        url=origin.put(f"{name}.car", car),
        data=car,
        index_cid=index_cid,
        index_url=origin.put(f"{name}.car.idx", index),
        blocks=blocks,
        offsets=offsets,
    )


def part_claims(part: Part) -> list[Claim]:
    """Inclusion plus locations for one part."""
    return [
        InclusionClaim(content=part.cid, includes=part.index_cid),
        LocationClaim(content=part.cid, location=[part.url]),
        LocationClaim(content=part.index_cid, location=[part.index_url]),
    ]


@dataclass
class Dag:
    """A dag-cbor root plus raw leaves split over two CAR parts."""
    root: CID
    root_bytes: bytes
    leaves: list[tuple[CID, bytes]]
    parts: list[Part]
    claims: list[Claim]


def build_dag(origin: FakeOrigin) -> Dag:
    leaves = [(make_cid(data), data) for data in (
        b"leaf one",
        b"leaf two",
        b"leaf three" * 20,
        b"leaf four",
    )]
    root_bytes = dag_cbor.encode({"links": [cid for cid, _ in leaves]})
    root = make_cid(root_bytes, "dag-cbor")

    part_a = build_part(origin, "part-a", [(root, root_bytes), leaves[0], leaves[1]])
    # trailing filler after leaf four keeps ranged reads well short of EOF
    filler = (make_cid(b"x" * 10_000), b"x" * 10_000)
    part_b = build_part(origin, "part-b", [leaves[2], leaves[3], filler])

    claims: list[Claim] = [PartitionClaim(content=root, parts=[part_a.cid, part_b.cid])]
    for part in (part_a, part_b):
        claims.extend(part_claims(part))
    return Dag(root=root, root_bytes=root_bytes, leaves=leaves, parts=[part_a, part_b], claims=claims)


# --- Fixtures ---

@pytest.fixture
def origin() -> FakeOrigin:
    return FakeOrigin()


@pytest.fixture
def fake_claims() -> FakeClaims:
    return FakeClaims()


@pytest_asyncio.fixture
async def http_client(origin: FakeOrigin) -> AsyncGenerator[httpx.AsyncClient, None]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(origin.handler))
    yield client
    await client.aclose()


@pytest.fixture
def dag(origin: FakeOrigin, fake_claims: FakeClaims) -> Dag:
    """DAG stored at the origin, with claims registered for its root."""
    built = build_dag(origin)
    fake_claims.add(built.root, *built.claims)
    # and served by the origin, for tests going through the HTTP client
    archives = [encode_delegation(c.type.value, claim_nb(c)) for c in built.claims]
    origin.put(claims_path(built.root), encode_claims_response(archives))
    return built


@pytest.fixture
def index(fake_claims: FakeClaims, http_client: httpx.AsyncClient) -> ContentClaimsIndex:
    return ContentClaimsIndex(fake_claims, http_client)


@pytest.fixture
def config() -> ServerConfig:
    return ServerConfig(claims_service_url=ORIGIN)


@pytest_asyncio.fixture
async def server(
    config: ServerConfig, http_client: httpx.AsyncClient
) -> AsyncGenerator[FreewayServer, None]:
    """Server whose HTTP traffic goes to the fake origin."""
    async with create_server(config, http_client=http_client) as srv:
        yield srv
