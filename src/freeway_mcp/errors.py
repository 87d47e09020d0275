"""Custom exceptions for freeway-mcp with user-friendly context."""

from typing import Any


class FreewayError(Exception):
    """Base error for freeway-mcp."""

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format error message with context."""
        parts = [self.message]

        if self.context:
            ctx_parts = [f"{k}={v}" for k, v in self.context.items() if v is not None]
            if ctx_parts:
                parts.append(f"({', '.join(ctx_parts)})")

        return " ".join(parts)


class SessionNotFoundError(FreewayError):
    """Session not found or already closed."""

    def __init__(self, session_id: str, **context: Any):
        super().__init__(
            f"Session '{session_id}' not found. It may have been closed or never existed.",
            session_id=session_id,
            **context
        )


class BudgetExceededError(FreewayError):
    """Tool call budget exceeded for session."""

    def __init__(
        self,
        session_id: str,
        used: int,
        limit: int,
        **context: Any
    ):
        super().__init__(
            f"Tool call budget exceeded: {used}/{limit} calls used. "
            f"Close this session or create a new one with higher max_tool_calls.",
            session_id=session_id,
            used=used,
            limit=limit,
            **context
        )


class InvalidCIDError(FreewayError):
    """A string could not be parsed as a CID."""

    def __init__(self, value: str, reason: str | None = None, **context: Any):
        msg = f"Invalid CID '{value}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, **context)


class ClaimsFetchError(FreewayError):
    """The content claims service could not be read."""


class BlockFetchError(FreewayError):
    """Transport failure while fetching a block byte range."""


class DecodeError(FreewayError):
    """Malformed binary data (index, CAR header or block frame)."""


class TruncatedStreamError(DecodeError):
    """Byte stream ended before the expected number of bytes arrived."""

    def __init__(self, expected: int, received: int, **context: Any):
        self.expected = expected
        self.received = received
        super().__init__(
            f"Unexpected end of stream: wanted {expected} bytes, got {received}",
            **context
        )


class IndexDecodeError(DecodeError):
    """MultihashIndexSorted index could not be decoded."""


class FrameDecodeError(DecodeError):
    """CAR block frame could not be decoded."""


class BlockVerificationError(FreewayError):
    """Fetched block bytes do not hash to the requested CID."""

    def __init__(self, cid: str, **context: Any):
        super().__init__(
            f"Block data does not match CID {cid}",
            cid=cid,
            **context
        )
