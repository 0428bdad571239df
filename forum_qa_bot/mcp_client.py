"""
MCP JSON-RPC Client

HTTP client the Slack bot uses to reach the forum MCP server (or any other
MCP server speaking JSON-RPC over streamable HTTP).

Features:
- Session-based MCP protocol (initialize -> tools/list -> tools/call)
- SSE or plain JSON response parsing
- Tool namespacing (server_id__tool_name)
- Session re-initialization when the server forgets us (HTTP 404)
- Convert MCP tools to OpenAI function calling format
"""

import os
import json
import logging
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

import httpx

from . import __version__

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

DEFAULT_FORUM_URL = os.getenv("MCP_FORUM_URL", "http://127.0.0.1:8765/mcp")
DEFAULT_AUTH_TOKEN = os.getenv("MCP_AUTH_TOKEN", "")


@dataclass
class MCPServerConfig:
    """Configuration for an MCP server."""
    server_id: str
    url: str
    description: str = ""
    enabled: bool = True
    auth_token: str = ""


@dataclass
class MCPTool:
    """A tool from an MCP server."""
    name: str
    description: str
    input_schema: Dict[str, Any]
    server_id: str
    server_url: str

    @property
    def full_name(self) -> str:
        """Get namespaced tool name (server_id__tool_name)."""
        return f"{self.server_id}__{self.name}"

    def to_openai_format(self) -> Dict[str, Any]:
        """Convert to OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.full_name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            }
        }


def parse_sse_response(content: str) -> Dict[str, Any]:
    """
    Extract the JSON-RPC message from an SSE event stream.

    data: {"jsonrpc": "2.0", "id": 1, "result": {...}}
    """
    for line in content.split('\n'):
        if line.startswith('data:'):
            try:
                return json.loads(line[5:].strip())
            except json.JSONDecodeError:
                continue
    return {}


def parse_rpc_response(response: httpx.Response) -> Dict[str, Any]:
    """Parse a JSON-RPC response that may be SSE-framed or plain JSON."""
    content_type = response.headers.get("content-type", "")
    if "text/event-stream" in content_type:
        return parse_sse_response(response.text)
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return parse_sse_response(response.text)
    return data if isinstance(data, dict) else {}


def tool_result_text(result: Dict[str, Any]) -> str:
    """Join the text parts of an MCP tool result."""
    parts = [
        c.get("text", "")
        for c in result.get("content", [])
        if isinstance(c, dict) and c.get("type") == "text"
    ]
    return "\n".join(p for p in parts if p)


class SessionExpiredError(Exception):
    """The server no longer knows our session (HTTP 404)."""


class MCPClient:
    """
    MCP JSON-RPC client.

    Usage:
        async with MCPClient() as client:
            tools = client.get_tools_for_llm()
            result = await client.call_tool("forum__search_messages", {"query": "vpn"})
    """

    def __init__(
        self,
        servers: Optional[List[MCPServerConfig]] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            servers: MCP server configurations. If None, uses the forum server.
            timeout: HTTP request timeout in seconds
            transport: Optional httpx transport (e.g. ASGITransport in tests)
        """
        if servers is None:
            servers = [
                MCPServerConfig(
                    server_id="forum",
                    url=DEFAULT_FORUM_URL,
                    description="Forum channel search, threads and experts",
                    auth_token=DEFAULT_AUTH_TOKEN,
                ),
            ]

        self.servers = {s.server_id: s for s in servers if s.enabled}
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._sessions: Dict[str, str] = {}  # server_id -> session_id
        self._tools: Dict[str, MCPTool] = {}  # full_name -> MCPTool
        self._request_id = 0

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """Initialize HTTP client and fetch tools from all servers."""
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

        for server_id, server in self.servers.items():
            try:
                session_id = await self._initialize_session(server)
                self._sessions[server_id] = session_id

                tools = await self._fetch_tools(server, session_id)
                for tool in tools:
                    self._tools[tool.full_name] = tool

                logger.info(f"Connected to {server_id}: {len(tools)} tools")
            except Exception as e:
                logger.warning(f"Failed to connect to {server_id}: {e}")

    async def close(self):
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
        self._sessions.clear()
        self._tools.clear()

    @property
    def sessions(self) -> Dict[str, str]:
        return dict(self._sessions)

    def _next_id(self) -> int:
        self._request_id += 1
        return self._request_id

    def _headers(self, server: MCPServerConfig, session_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if session_id:
            headers["mcp-session-id"] = session_id
        if server.auth_token:
            headers["Authorization"] = f"Bearer {server.auth_token}"
        return headers

    async def _post(
        self,
        server: MCPServerConfig,
        payload: Dict[str, Any],
        session_id: Optional[str] = None,
    ) -> httpx.Response:
        if self._client is None:
            raise RuntimeError("MCPClient not initialized")
        response = await self._client.post(
            server.url,
            json=payload,
            headers=self._headers(server, session_id),
        )
        if response.status_code == 404 and session_id:
            raise SessionExpiredError(server.server_id)
        if response.status_code in (401, 403):
            raise RuntimeError(f"{server.server_id} rejected credentials (HTTP {response.status_code})")
        return response

    async def _initialize_session(self, server: MCPServerConfig) -> str:
        """
        Initialize MCP session with a server.

        Returns:
            Session ID from server
        """
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "initialize",
            "params": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {
                    "name": "ForumQABot",
                    "version": __version__,
                }
            }
        }

        response = await self._post(server, payload)

        session_id = response.headers.get("mcp-session-id")
        if not session_id:
            raise RuntimeError(f"No session ID from {server.server_id}")

        await self._post(
            server,
            {"jsonrpc": "2.0", "method": "notifications/initialized"},
            session_id,
        )

        logger.debug(f"Session initialized: {server.server_id} -> {session_id[:16]}...")
        return session_id

    async def _fetch_tools(self, server: MCPServerConfig, session_id: str) -> List[MCPTool]:
        """Fetch tool definitions from a server."""
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "tools/list",
            "params": {},
        }

        response = await self._post(server, payload, session_id)
        result = parse_rpc_response(response)
        if "error" in result:
            raise RuntimeError(f"tools/list failed on {server.server_id}: {result['error']}")
        raw_tools = result.get("result", {}).get("tools", [])

        return [
            MCPTool(
                name=t["name"],
                description=t.get("description", f"Tool: {t['name']}"),
                input_schema=t.get("inputSchema", {}),
                server_id=server.server_id,
                server_url=server.url,
            )
            for t in raw_tools
        ]

    def get_tools(self) -> List[MCPTool]:
        """Get all available tools."""
        return list(self._tools.values())

    def get_tools_for_llm(self) -> List[Dict[str, Any]]:
        """Get all tools in OpenAI function calling format."""
        return [tool.to_openai_format() for tool in self._tools.values()]

    def get_tool(self, full_name: str) -> Optional[MCPTool]:
        """Get a tool by its full name (server_id__tool_name)."""
        return self._tools.get(full_name)

    async def call_tool(
        self,
        full_name: str,
        arguments: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Call a tool on an MCP server.

        Args:
            full_name: Tool name in format server_id__tool_name
            arguments: Tool arguments

        Returns:
            MCP tool result, or {"error": ...}
        """
        tool = self._tools.get(full_name)
        if not tool:
            return {"error": f"Unknown tool: {full_name}"}

        server = self.servers.get(tool.server_id)
        if not server:
            return {"error": f"Unknown server: {tool.server_id}"}

        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": "tools/call",
            "params": {
                "name": tool.name,  # Original tool name, not namespaced
                "arguments": arguments,
            }
        }

        logger.debug(f"Calling tool: {full_name} with args: {arguments}")

        try:
            response = await self._call_with_session(server, payload)
        except Exception as e:
            logger.error(f"Tool call failed: {e}")
            return {"error": str(e)}

        result = parse_rpc_response(response)
        if "error" in result:
            logger.warning(f"Tool error: {result['error']}")
            return {"error": result["error"]}

        tool_result = result.get("result", result)
        logger.debug(f"Tool result: {str(tool_result)[:200]}...")
        return tool_result

    async def _call_with_session(self, server: MCPServerConfig, payload: Dict[str, Any]) -> httpx.Response:
        """Post with the current session, re-initializing once if it expired."""
        session_id = self._sessions.get(server.server_id)
        if not session_id:
            session_id = await self._initialize_session(server)
            self._sessions[server.server_id] = session_id

        try:
            return await self._post(server, payload, session_id)
        except SessionExpiredError:
            logger.info(f"Session expired on {server.server_id}, re-initializing")
            session_id = await self._initialize_session(server)
            self._sessions[server.server_id] = session_id
            return await self._post(server, payload, session_id)


# =============================================================================
# Helper Functions
# =============================================================================

def parse_tool_name(full_name: str) -> tuple[str, str]:
    """
    Parse a namespaced tool name into server_id and tool_name.

    Args:
        full_name: Tool name in format "server_id__tool_name"

    Returns:
        Tuple of (server_id, tool_name)
    """
    if "__" in full_name:
        parts = full_name.split("__", 1)
        return parts[0], parts[1]
    return "default", full_name


async def test_mcp_connectivity(
    servers: Optional[List[MCPServerConfig]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """
    Check connectivity to MCP servers.

    Returns:
        Dict with per-server status, total_tools and tools_by_server
    """
    results: Dict[str, Any] = {}

    async with MCPClient(servers=servers, transport=transport) as client:
        sessions = client.sessions
        for server_id, server in client.servers.items():
            session_id = sessions.get(server_id)
            results[server_id] = {
                "connected": bool(session_id),
                "session_id": session_id[:16] + "..." if session_id else None,
                "url": server.url,
            }

        tools = client.get_tools()
        results["total_tools"] = len(tools)
        results["tools_by_server"] = {
            server_id: len([t for t in tools if t.server_id == server_id])
            for server_id in client.servers
        }

    return results
