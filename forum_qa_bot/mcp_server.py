"""
Forum MCP Server

HTTP JSON-RPC server speaking the Model Context Protocol (streamable HTTP
transport) so the Slack bot, or any MCP client, can use the forum tools.

Features:
- Session-based protocol (initialize -> tools/list -> tools/call)
- SSE-framed responses when the client accepts text/event-stream
- Optional bearer-token auth (MCP_AUTH_TOKEN)
- Idle session expiry

Usage:
    python -m forum_qa_bot.mcp_server

    # Or with uvicorn:
    uvicorn forum_qa_bot.mcp_server:create_app --factory --port 8765
"""

import os
import json
import time
import uuid
import secrets
import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, AsyncGenerator

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

# Load environment variables before module-level config is read
load_dotenv()

from . import __version__  # noqa: E402
from .database import Database  # noqa: E402
from .docs_connector import DocsConnector  # noqa: E402
from .expert_discovery import ExpertFinder  # noqa: E402
from .message_store import MessageStore  # noqa: E402
from .tools import ForumToolbox, UnknownToolError  # noqa: E402

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "forum-qa-mcp"
SESSION_HEADER = "mcp-session-id"

MCP_HOST = os.getenv("MCP_HOST", "127.0.0.1")
MCP_PORT = int(os.getenv("MCP_PORT", "8765"))
MCP_AUTH_TOKEN = os.getenv("MCP_AUTH_TOKEN", "")
MCP_SESSION_TTL_SECONDS = int(os.getenv("MCP_SESSION_TTL_SECONDS", "3600"))

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class JSONRPCError(Exception):
    """A JSON-RPC error to send back to the client."""

    def __init__(self, code: int, message: str, http_status: int = 200):
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status


class SessionRegistry:
    """In-memory MCP sessions with idle expiry."""

    def __init__(self, ttl_seconds: int = MCP_SESSION_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, float] = {}

    def create(self) -> str:
        self.expire()
        session_id = uuid.uuid4().hex
        self._sessions[session_id] = time.monotonic()
        return session_id

    def touch(self, session_id: str) -> bool:
        """Refresh a session. Returns False if it is unknown or expired."""
        last_seen = self._sessions.get(session_id)
        if last_seen is None:
            return False
        if time.monotonic() - last_seen > self.ttl_seconds:
            del self._sessions[session_id]
            return False
        self._sessions[session_id] = time.monotonic()
        return True

    def expire(self) -> int:
        cutoff = time.monotonic() - self.ttl_seconds
        stale = [sid for sid, seen in self._sessions.items() if seen < cutoff]
        for sid in stale:
            del self._sessions[sid]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


bearer_scheme = HTTPBearer(auto_error=False)


def verify_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """
    Check the bearer token when MCP_AUTH_TOKEN is configured.

    Raises:
        HTTPException: 401 if the token is missing, 403 if it is wrong
    """
    expected = request.app.state.auth_token
    if not expected:
        return "auth_disabled"
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token.",
        )
    if not secrets.compare_digest(credentials.credentials, expected):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token.",
        )
    return credentials.credentials


def _wants_sse(request: Request) -> bool:
    return "text/event-stream" in request.headers.get("accept", "")


def _encode(request: Request, message: Dict[str, Any], status_code: int = 200,
            headers: Optional[Dict[str, str]] = None) -> Response:
    """Send a JSON-RPC message as an SSE frame or plain JSON."""
    if _wants_sse(request):
        body = f"event: message\ndata: {json.dumps(message, default=str)}\n\n"
        return Response(
            content=body,
            status_code=status_code,
            media_type="text/event-stream",
            headers=headers,
        )
    return JSONResponse(content=message, status_code=status_code, headers=headers)


def _error(msg_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": msg_id, "error": {"code": code, "message": message}}


async def _build_toolbox(app: FastAPI) -> ForumToolbox:
    db = Database()
    await db.initialize()
    store = MessageStore(db)
    await store.initialize()
    docs = DocsConnector()
    app.state.db = db
    app.state.docs = docs
    return ForumToolbox(store, ExpertFinder(store), docs)


def create_app(
    toolbox: Optional[ForumToolbox] = None,
    auth_token: Optional[str] = None,
    session_ttl_seconds: Optional[int] = None,
) -> FastAPI:
    """
    Build the MCP server app.

    Args:
        toolbox: Tool catalogue; when None it is built from the environment at startup
        auth_token: Bearer token override (defaults to MCP_AUTH_TOKEN)
        session_ttl_seconds: Idle session expiry override
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owns_toolbox = app.state.toolbox is None
        if owns_toolbox:
            app.state.toolbox = await _build_toolbox(app)
            logger.info(f"MCP server ready with {len(app.state.toolbox.list_tools())} tools")

        yield

        if owns_toolbox:
            await app.state.docs.close()
            await app.state.db.close()
            app.state.toolbox = None
        logger.info("MCP server shut down")

    app = FastAPI(
        title="Forum Q&A MCP Server",
        description="MCP tools over indexed forum channels",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.toolbox = toolbox
    app.state.auth_token = auth_token if auth_token is not None else MCP_AUTH_TOKEN
    app.state.sessions = SessionRegistry(session_ttl_seconds or MCP_SESSION_TTL_SECONDS)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        tb = app.state.toolbox
        return {
            "status": "ok" if tb is not None else "starting",
            "sessions": len(app.state.sessions),
            "tools": len(tb.list_tools()) if tb is not None else 0,
        }

    @app.post("/mcp")
    async def mcp_endpoint(request: Request, _token: str = Depends(verify_token)) -> Response:
        raw = await request.body()
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _encode(request, _error(None, PARSE_ERROR, "Parse error"), status_code=400)

        if not isinstance(payload, dict):
            return _encode(request, _error(None, INVALID_REQUEST, "Invalid request"), status_code=400)

        msg_id = payload.get("id")
        method = payload.get("method")
        is_notification = "id" not in payload

        if payload.get("jsonrpc") != "2.0" or not isinstance(method, str):
            return _encode(request, _error(msg_id, INVALID_REQUEST, "Invalid request"), status_code=400)

        sessions: SessionRegistry = app.state.sessions

        if method == "initialize":
            session_id = sessions.create()
            result = {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": SERVER_NAME, "version": __version__},
            }
            client_info = (payload.get("params") or {}).get("clientInfo") or {}
            logger.info(f"Session {session_id[:8]} opened by {client_info.get('name', 'unknown')}")
            return _encode(
                request,
                {"jsonrpc": "2.0", "id": msg_id, "result": result},
                headers={SESSION_HEADER: session_id},
            )

        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _encode(request, _error(msg_id, INVALID_REQUEST, "Missing session ID"), status_code=400)
        if not sessions.touch(session_id):
            return _encode(request, _error(msg_id, INVALID_REQUEST, "Session not found"), status_code=404)

        if is_notification:
            return Response(status_code=202)

        try:
            result = await _dispatch(app, method, payload.get("params") or {})
        except JSONRPCError as e:
            return _encode(request, _error(msg_id, e.code, e.message), status_code=e.http_status)
        except Exception as e:
            logger.error(f"Error handling {method}: {e}", exc_info=True)
            return _encode(request, _error(msg_id, INTERNAL_ERROR, "Internal error"))

        return _encode(request, {"jsonrpc": "2.0", "id": msg_id, "result": result})

    return app


async def _dispatch(app: FastAPI, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
    """Route a JSON-RPC request to its handler."""
    toolbox: Optional[ForumToolbox] = app.state.toolbox
    if toolbox is None:
        raise JSONRPCError(INTERNAL_ERROR, "Server not ready", http_status=503)

    if method == "ping":
        return {}

    if method == "tools/list":
        return {"tools": toolbox.list_tools()}

    if method == "tools/call":
        if not isinstance(params, dict):
            raise JSONRPCError(INVALID_PARAMS, "params must be an object")
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise JSONRPCError(INVALID_PARAMS, "Missing tool name")
        try:
            result = await toolbox.call(name, params.get("arguments") or {})
        except UnknownToolError as e:
            raise JSONRPCError(INVALID_PARAMS, str(e))
        logger.info(f"tools/call {name} -> {'error' if result.is_error else 'ok'}")
        return result.to_mcp()

    raise JSONRPCError(METHOD_NOT_FOUND, f"Method not found: {method}")


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    """Run the MCP server with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO")),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(create_app(), host=MCP_HOST, port=MCP_PORT, log_level="info")


if __name__ == "__main__":
    main()
