"""freeway-mcp server: content-claims block resolution over MCP.

Each session owns one claims resolver and block store, so its cache lives
exactly as long as the session.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import wraps
from typing import Any, TypeVar

import httpx
from mcp.server.fastmcp import FastMCP

from freeway_mcp.claims import ContentClaimsClient, ContentClaimsIndex
from freeway_mcp.config import ServerConfig, load_config
from freeway_mcp.errors import BudgetExceededError, SessionNotFoundError
from freeway_mcp.logging_config import StructuredLogger, configure_logging, correlation_id_var
from freeway_mcp.models import Session
from freeway_mcp.storage import RangeBlockStore

logger = StructuredLogger(__name__)

T = TypeVar("T")

# Track whether we've warned about tool naming (one-time only)
_WARNED_NO_NAME_SUPPORT = False


class ToolNamingError(Exception):
    """Raised when canonical tool naming fails in strict mode."""
    pass


def named_tool(mcp_server: FastMCP, canonical_name: str, *, strict: bool = True):
    """Register a tool with canonical naming.

    Args:
        mcp_server: The MCP Server instance
        canonical_name: Canonical tool name (e.g., "freeway.block.get")
        strict: If True (default), fail fast when SDK doesn't support name=.
                If False, fall back to function names with a warning.

    Raises:
        ToolNamingError: In strict mode, if SDK doesn't support canonical naming.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        global _WARNED_NO_NAME_SUPPORT
        try:
            return mcp_server.tool(name=canonical_name)(func)
        except TypeError as e:
            if "name" not in str(e):
                raise

            if strict:
                raise ToolNamingError(
                    f"MCP SDK doesn't support tool(name=...). "
                    f"Cannot register '{canonical_name}' with canonical name. "
                    f"Either upgrade to FastMCP/newer SDK, or set "
                    f"allow_noncanonical_tool_names=True in server config."
                ) from e

            if not _WARNED_NO_NAME_SUPPORT:
                logger.warning(
                    "MCP SDK doesn't support tool(name=...). "
                    "Falling back to function names (e.g., 'freeway_block_get' "
                    "instead of 'freeway.block.get')."
                )
                _WARNED_NO_NAME_SUPPORT = True

            return mcp_server.tool()(func)

    return decorator


@dataclass
class SessionContext:
    """A live session and the resolver objects it owns."""
    session: Session
    index: ContentClaimsIndex
    blocks: RangeBlockStore


class FreewayServer:
    """MCP server with middleware for tracing and tool call budgets.

    Concurrency Model:
    - Sessions are in memory and independent of each other
    - Per-session locks serialise session close against other close calls
    - Block and index calls within one session may run concurrently; the
      resolver de-duplicates concurrent claim reads itself
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config or load_config()

        # Shared across sessions; created on start() unless injected
        self._owns_http = http_client is None
        self.http = http_client

        self.mcp = FastMCP("freeway-mcp")

        self._sessions: dict[str, SessionContext] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._lock_manager_lock: asyncio.Lock = asyncio.Lock()

        self._register_tools()

    async def start(self) -> None:
        """Start the server."""
        if self.http is None:
            self.http = httpx.AsyncClient(
                timeout=self.config.http_timeout_seconds,
                follow_redirects=True,
            )

    async def stop(self) -> None:
        """Stop the server."""
        self._sessions.clear()
        if self._owns_http and self.http is not None:
            await self.http.aclose()
            self.http = None

    def _register_tools(self) -> None:
        """Register all MCP tools."""
        from freeway_mcp.tools.blocks import register_block_tools
        from freeway_mcp.tools.session import register_session_tools

        register_session_tools(self)
        register_block_tools(self)

    def tool(self, name: str):
        """Register a tool with canonical naming.

        Args:
            name: Canonical tool name (e.g., "freeway.session.create")
        """
        strict = not self.config.allow_noncanonical_tool_names
        return named_tool(self.mcp, name, strict=strict)

    # --- Sessions ---

    def open_session(self, session: Session) -> SessionContext:
        """Build a fresh resolver and block store for ``session``."""
        if self.http is None:
            raise RuntimeError("Server not started")

        claims = ContentClaimsClient(session.claims_service_url, self.http)
        index = ContentClaimsIndex(claims, self.http)
        blocks = RangeBlockStore(
            index,
            self.http,
            max_frame_length=self.config.max_frame_length,
            verify=session.config.verify_blocks,
        )
        context = SessionContext(session=session, index=index, blocks=blocks)
        self._sessions[session.id] = context
        return context

    def get_session(self, session_id: str) -> SessionContext:
        context = self._sessions.get(session_id)
        if context is None:
            raise SessionNotFoundError(session_id)
        return context

    def drop_session(self, session_id: str) -> SessionContext:
        context = self._sessions.pop(session_id, None)
        if context is None:
            raise SessionNotFoundError(session_id)
        return context

    # --- Lock Management ---

    async def get_session_lock(self, session_id: str) -> asyncio.Lock:
        """Get or create a lock for a session (single-process only)."""
        async with self._lock_manager_lock:
            if session_id not in self._session_locks:
                self._session_locks[session_id] = asyncio.Lock()
            return self._session_locks[session_id]

    async def release_session_lock(self, session_id: str) -> None:
        """Remove a session lock. The lock should not be held."""
        async with self._lock_manager_lock:
            self._session_locks.pop(session_id, None)

    # --- Middleware ---

    def check_budget(self, session_id: str) -> tuple[bool, int, int]:
        """Check if session has remaining tool call budget.

        Returns:
            (allowed, used, limit)
        """
        session = self.get_session(session_id).session
        limit = session.config.max_tool_calls
        used = session.tool_calls_used
        return used < limit, used, limit

    def increment_budget(self, session_id: str) -> int:
        """Increment tool call counter, return new used count."""
        session = self.get_session(session_id).session
        session.tool_calls_used += 1
        return session.tool_calls_used

    def truncate_content(self, content: str, max_chars: int) -> tuple[str, bool]:
        """Truncate content to max chars.

        Returns:
            (content, truncated)
        """
        if len(content) <= max_chars:
            return content, False
        return content[:max_chars], True


def tool_handler(operation: str):
    """Decorator for tool handlers with budget middleware and structured logging.

    Args:
        operation: Canonical operation name (e.g., "freeway.block.get")
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        async def wrapper(server: FreewayServer, **kwargs: Any) -> Any:
            correlation_id = str(uuid.uuid4())
            correlation_id_var.set(correlation_id)

            start_time = time.time()
            session_id = kwargs.get("session_id")

            logger.info(
                f"Starting {operation}",
                session_id=session_id,
                operation=operation,
                cid=kwargs.get("cid"),
                input_keys=list(kwargs.keys())
            )

            try:
                if session_id and operation != "freeway.session.create":
                    allowed, used, limit = server.check_budget(session_id)
                    if not allowed:
                        raise BudgetExceededError(session_id, used, limit)
                    server.increment_budget(session_id)

                result = await func(server, **kwargs)
                duration_ms = int((time.time() - start_time) * 1000)

                logger.info(
                    f"Completed {operation}",
                    session_id=session_id,
                    operation=operation,
                    duration_ms=duration_ms,
                    success=True
                )
                return result

            except Exception as e:
                duration_ms = int((time.time() - start_time) * 1000)
                logger.error(
                    f"Failed {operation}: {str(e)}",
                    session_id=session_id,
                    operation=operation,
                    duration_ms=duration_ms,
                    error=str(e),
                    error_type=type(e).__name__
                )
                raise

            finally:
                # Clear correlation ID to prevent leaks
                correlation_id_var.set(None)

        return wrapper
    return decorator


@asynccontextmanager
async def create_server(
    config: ServerConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
):
    """Create and manage server lifecycle."""
    server = FreewayServer(config, http_client=http_client)
    await server.start()
    try:
        yield server
    finally:
        await server.stop()


async def run_server() -> None:
    """Run the MCP server."""
    config = load_config()

    configure_logging(
        log_level=config.log_level,
        structured=config.structured_logging,
        log_file=config.log_file
    )

    async with create_server(config) as server:
        # FastMCP handles stdio internally
        await server.mcp.run_stdio_async()


def main() -> None:
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
