"""Core data models for freeway-mcp.

Identifier semantics:
- cid: content identifier; equality is by multihash, not by codec or base
- multihash: self-describing digest bytes, the cache key for index entries
- session_id: server-scoped identifier of one resolution session (UUID)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from multiformats import CID
from pydantic import BaseModel, ConfigDict, Field

from freeway_mcp.errors import InvalidCIDError

RAW_CODEC = "raw"


def generate_id() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_cid(value: str | CID) -> CID:
    """Parse a CID string, passing CID instances through."""
    if isinstance(value, CID):
        return value
    try:
        return CID.decode(value.strip())
    except (ValueError, KeyError) as e:
        raise InvalidCIDError(value, str(e)) from e


def cid_key(cid: CID) -> bytes:
    """Mapping key for a CID: its multihash bytes."""
    return bytes(cid.digest)


def cid_str(cid: CID) -> str:
    """Canonical string form: base32 for CIDv1, base58btc for CIDv0.

    CIDs decoded from dag-cbor or parsed from user input keep whatever
    multibase they arrived with.
    """
    if cid.version == 1 and cid.base.name != "base32":
        cid = cid.set(base="base32")
    return str(cid)


def raw_cid(multihash: bytes) -> CID:
    """CIDv1 with the raw codec for a multihash."""
    return CID("base32", 1, RAW_CODEC, multihash)


def is_raw(cid: CID) -> bool:
    return cid.codec.name == RAW_CODEC


# --- Claims ---

class ClaimType(str, Enum):
    """Capability names of content claims."""
    LOCATION = "assert/location"
    PARTITION = "assert/partition"
    INCLUSION = "assert/inclusion"
    RELATION = "assert/relation"
    EQUALS = "assert/equals"


@dataclass(frozen=True)
class ByteRange:
    """Optional byte range attached to a location claim."""
    offset: int
    length: int | None = None


@dataclass(frozen=True)
class LocationClaim:
    """Content is retrievable at one or more URLs."""
    content: CID
    location: list[str]
    range: ByteRange | None = None
    type: ClaimType = field(default=ClaimType.LOCATION, init=False)


@dataclass(frozen=True)
class PartitionClaim:
    """Content is the aggregate of the listed parts."""
    content: CID
    parts: list[CID]
    blocks: CID | None = None
    type: ClaimType = field(default=ClaimType.PARTITION, init=False)


@dataclass(frozen=True)
class InclusionClaim:
    """Content (a CAR part) is indexed by the ``includes`` object."""
    content: CID
    includes: CID
    proof: CID | None = None
    type: ClaimType = field(default=ClaimType.INCLUSION, init=False)


@dataclass(frozen=True)
class RelationClaim:
    """Content links to children, described by parts and their indexes."""
    content: CID
    children: list[CID]
    type: ClaimType = field(default=ClaimType.RELATION, init=False)


@dataclass(frozen=True)
class EqualsClaim:
    """Content is the same data as ``equals`` under another identifier."""
    content: CID
    equals: CID
    type: ClaimType = field(default=ClaimType.EQUALS, init=False)


Claim = LocationClaim | PartitionClaim | InclusionClaim | RelationClaim | EqualsClaim


# --- Index and blocks ---

class IndexEntry(BaseModel):
    """Where one encoded block lives.

    ``offset`` points at the start of the CAR frame (length varint, CID,
    payload) inside the object at ``location``. ``length`` is the frame
    length when the index format records it; MultihashIndexSorted does not.
    """
    model_config = ConfigDict(frozen=True)

    multihash: bytes
    offset: int = Field(ge=0)
    length: int | None = None
    location: str

    @property
    def cid(self) -> CID:
        return raw_cid(self.multihash)


@dataclass(frozen=True)
class Block:
    """Raw bytes of one block."""
    cid: CID
    bytes: bytes


class ResolutionStatus(str, Enum):
    """Outcome of claim discovery for one CID."""
    COMPLETE = "complete"  # every part indexed
    PARTIAL = "partial"  # some parts indexed, some failed
    EMPTY = "empty"  # nothing indexed


class PartFailure(BaseModel):
    """A part that could not be indexed, and why."""
    part: str
    reason: str  # missing_inclusion, missing_part_location, missing_index_location, invalid_location, index_fetch, index_decode
    detail: str | None = None


class ResolutionReport(BaseModel):
    """Result of reading claims for one CID."""
    cid: str
    status: ResolutionStatus
    claims: int = 0
    parts: list[str] = Field(default_factory=list)
    indexed_parts: list[str] = Field(default_factory=list)
    entries_cached: int = 0
    failures: list[PartFailure] = Field(default_factory=list)


# --- Sessions ---

class SessionStatus(str, Enum):
    """Session lifecycle status."""
    ACTIVE = "active"
    CLOSED = "closed"


class SessionConfig(BaseModel):
    """Per-session caps."""
    max_tool_calls: int = Field(default=500, ge=1)
    max_chars_per_response: int = Field(default=4_000_000, ge=1000)
    verify_blocks: bool = True


class Session(BaseModel):
    """One resolution session: a claims service plus a fresh cache."""
    id: str = Field(default_factory=generate_id)
    name: str | None = None
    claims_service_url: str
    status: SessionStatus = SessionStatus.ACTIVE
    config: SessionConfig = Field(default_factory=SessionConfig)
    created_at: datetime = Field(default_factory=utcnow)
    closed_at: datetime | None = None
    tool_calls_used: int = 0
