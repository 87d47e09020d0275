"""Session management tools: freeway.session.*"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from freeway_mcp.logging_config import StructuredLogger
from freeway_mcp.models import Session, SessionConfig, SessionStatus, utcnow
from freeway_mcp.server import tool_handler

if TYPE_CHECKING:
    from freeway_mcp.server import FreewayServer

logger = StructuredLogger(__name__)


def register_session_tools(server: FreewayServer) -> None:
    """Register session management tools."""

    @server.tool("freeway.session.create")
    async def freeway_session_create(
        name: str | None = None,
        claims_service_url: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Start a resolution session with an empty block index cache.

        Args:
            name: Human-readable session name
            claims_service_url: Content claims service to read (defaults to server config)
            config: Session caps (max_tool_calls, max_chars_per_response, verify_blocks)
        """
        return await _session_create(
            server, name=name, claims_service_url=claims_service_url, config=config
        )

    @server.tool("freeway.session.info")
    async def freeway_session_info(session_id: str) -> dict[str, Any]:
        """Get session cache statistics and remaining budget.

        Args:
            session_id: Session ID to query
        """
        return await _session_info(server, session_id=session_id)

    @server.tool("freeway.session.close")
    async def freeway_session_close(session_id: str) -> dict[str, Any]:
        """Close a session and discard its cache.

        Args:
            session_id: Session ID to close
        """
        return await _session_close(server, session_id=session_id)


@tool_handler("freeway.session.create")
async def _session_create(
    server: FreewayServer,
    name: str | None = None,
    claims_service_url: str | None = None,
    config: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Create a new session."""
    defaults = {
        "max_tool_calls": server.config.default_max_tool_calls,
        "max_chars_per_response": server.config.default_max_chars_per_response,
        "verify_blocks": server.config.verify_blocks,
    }
    session_config = SessionConfig(**{**defaults, **(config or {})})
    session = Session(
        name=name,
        claims_service_url=claims_service_url or server.config.claims_service_url,
        config=session_config,
    )
    server.open_session(session)

    # Count session.create as a tool call
    server.increment_budget(session.id)

    return {
        "session_id": session.id,
        "claims_service_url": session.claims_service_url,
        "created_at": session.created_at.isoformat(),
        "config": session.config.model_dump(),
    }


@tool_handler("freeway.session.info")
async def _session_info(
    server: FreewayServer,
    session_id: str,
) -> dict[str, Any]:
    """Get session info."""
    context = server.get_session(session_id)
    session = context.session

    return {
        "session_id": session.id,
        "name": session.name,
        "status": session.status.value,
        "claims_service_url": session.claims_service_url,
        "created_at": session.created_at.isoformat(),
        "cached_entries": context.index.cache_size,
        "claims_fetched": context.index.claims_fetched_count,
        "tool_calls_used": session.tool_calls_used,
        "tool_calls_remaining": session.config.max_tool_calls - session.tool_calls_used,
        "config": session.config.model_dump(),
    }


@tool_handler("freeway.session.close")
async def _session_close(
    server: FreewayServer,
    session_id: str,
) -> dict[str, Any]:
    """Close session and drop its resolver.

    Holds the session lock so concurrent closes see a consistent state.
    """
    lock = await server.get_session_lock(session_id)
    async with lock:
        context = server.drop_session(session_id)
        session = context.session
        session.status = SessionStatus.CLOSED
        session.closed_at = utcnow()

        result = {
            "session_id": session.id,
            "status": session.status.value,
            "closed_at": session.closed_at.isoformat(),
            "summary": {
                "cached_entries": context.index.cache_size,
                "claims_fetched": context.index.claims_fetched_count,
                "tool_calls": session.tool_calls_used,
            },
        }

    await server.release_session_lock(session_id)

    logger.debug("Session closed", session_id=session_id)
    return result
