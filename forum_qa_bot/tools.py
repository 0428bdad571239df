"""
Forum MCP Tools

The tool catalogue served by the MCP server. Each tool returns JSON text
(MCP "text" content) that always carries permalinks so the bot can cite
its sources.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Callable, Awaitable

from .docs_connector import DocsConnector, DocsConnectorError
from .expert_discovery import ExpertFinder
from .message_store import MessageStore, SEARCH_MAX_LIMIT, validate_limit

logger = logging.getLogger(__name__)


class UnknownToolError(Exception):
    """Raised when a tool name is not in the catalogue."""


class ToolArgumentError(ValueError):
    """Raised when tool arguments fail validation."""


@dataclass
class ToolDefinition:
    """An MCP tool definition."""
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Callable[..., Awaitable[Any]]

    def to_mcp(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class MCPToolResult:
    """Result of a tool call in MCP shape."""
    text: str
    is_error: bool = False
    structured: Optional[Dict[str, Any]] = None

    def to_mcp(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "content": [{"type": "text", "text": self.text}],
            "isError": self.is_error,
        }
        if self.structured is not None:
            result["structuredContent"] = self.structured
        return result


_LIMIT_SCHEMA = {
    "type": "integer",
    "minimum": 1,
    "maximum": SEARCH_MAX_LIMIT,
    "description": "Maximum number of results",
}


def _get_str(arguments: Dict[str, Any], key: str, required: bool = False) -> Optional[str]:
    value = arguments.get(key)
    if value is None or value == "":
        if required:
            raise ToolArgumentError(f"Missing required argument: {key}")
        return None
    if not isinstance(value, str):
        raise ToolArgumentError(f"Argument '{key}' must be a string")
    return value


def _get_limit(arguments: Dict[str, Any], default: int) -> int:
    value = arguments.get("limit", default)
    if value is None:
        return default
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ToolArgumentError("Argument 'limit' must be an integer")
    return value


class ForumToolbox:
    """
    Tool catalogue backed by the message store, expert finder and docs.

    Usage:
        toolbox = ForumToolbox(store, ExpertFinder(store), DocsConnector())
        tools = toolbox.list_tools()
        result = await toolbox.call("search_messages", {"query": "vpn"})
    """

    def __init__(
        self,
        store: MessageStore,
        experts: ExpertFinder,
        docs: Optional[DocsConnector] = None,
    ):
        self.store = store
        self.experts = experts
        self.docs = docs
        self._tools: Dict[str, ToolDefinition] = {}
        self._register_tools()

    def _register_tools(self):
        self._add(ToolDefinition(
            name="search_messages",
            description=(
                "Search indexed forum channel messages. Returns the best-matching "
                "messages (one per thread) with author, channel and permalink."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search keywords"},
                    "channel": {
                        "type": "string",
                        "description": "Optional forum channel name or ID to restrict the search",
                    },
                    "limit": _LIMIT_SCHEMA,
                },
                "required": ["query"],
            },
            handler=self._search_messages,
        ))
        self._add(ToolDefinition(
            name="get_thread",
            description="Get a full forum thread (question and all replies) in order.",
            input_schema={
                "type": "object",
                "properties": {
                    "channel": {"type": "string", "description": "Channel name or ID"},
                    "thread_ts": {"type": "string", "description": "ts of the thread's first message"},
                },
                "required": ["channel", "thread_ts"],
            },
            handler=self._get_thread,
        ))
        self._add(ToolDefinition(
            name="find_experts",
            description=(
                "Find people who have answered questions about a topic in forum "
                "channels, with example messages as evidence."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "topic": {"type": "string", "description": "Topic keywords"},
                    "channel": {"type": "string", "description": "Optional channel name or ID"},
                    "limit": _LIMIT_SCHEMA,
                },
                "required": ["topic"],
            },
            handler=self._find_experts,
        ))
        self._add(ToolDefinition(
            name="list_forum_channels",
            description="List the forum channels the bot has indexed.",
            input_schema={"type": "object", "properties": {}},
            handler=self._list_forum_channels,
        ))
        if self.docs is not None and self.docs.enabled:
            self._add(ToolDefinition(
                name="search_docs",
                description="Search the external documentation site.",
                input_schema={
                    "type": "object",
                    "properties": {
                        "query": {"type": "string", "description": "Search keywords"},
                        "limit": _LIMIT_SCHEMA,
                    },
                    "required": ["query"],
                },
                handler=self._search_docs,
            ))

    def _add(self, tool: ToolDefinition):
        self._tools[tool.name] = tool

    def list_tools(self) -> List[Dict[str, Any]]:
        return [t.to_mcp() for t in self._tools.values()]

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> MCPToolResult:
        """
        Run a tool.

        Raises:
            UnknownToolError: if the tool does not exist

        Returns:
            MCPToolResult; argument problems are reported with is_error=True
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(f"Unknown tool: {name}")
        if arguments is not None and not isinstance(arguments, dict):
            return MCPToolResult(text="Arguments must be an object", is_error=True)

        try:
            payload = await tool.handler(arguments or {})
        except (ValueError, DocsConnectorError) as e:
            logger.info(f"Tool {name} rejected call: {e}")
            return MCPToolResult(text=f"Error: {e}", is_error=True)

        return MCPToolResult(
            text=json.dumps(payload, ensure_ascii=False, default=str),
            structured=payload,
        )

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _search_messages(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        query = _get_str(arguments, "query", required=True)
        channel = _get_str(arguments, "channel")
        limit = _get_limit(arguments, 8)
        hits = await self.store.search(query, channel=channel, limit=limit)
        return {
            "query": query,
            "channel": channel,
            "count": len(hits),
            "results": [h.to_dict() for h in hits],
        }

    async def _get_thread(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        channel = _get_str(arguments, "channel", required=True)
        thread_ts = _get_str(arguments, "thread_ts", required=True)
        thread = await self.store.get_thread(channel, thread_ts)
        if thread is None:
            raise ToolArgumentError(f"No indexed thread {thread_ts} in {channel}")
        return thread.to_dict()

    async def _find_experts(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        topic = _get_str(arguments, "topic", required=True)
        channel = _get_str(arguments, "channel")
        limit = _get_limit(arguments, 5)
        experts = await self.experts.find_experts(topic, channel=channel, limit=limit)
        return {
            "topic": topic,
            "count": len(experts),
            "experts": [e.to_dict() for e in experts],
        }

    async def _list_forum_channels(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        channels = await self.store.list_channels()
        return {
            "count": len(channels),
            "channels": [c.to_dict() for c in channels],
        }

    async def _search_docs(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        query = _get_str(arguments, "query", required=True)
        limit = validate_limit(_get_limit(arguments, 5))
        results = await self.docs.search(query, limit=limit)
        return {
            "query": query,
            "count": len(results),
            "results": [r.to_dict() for r in results],
        }
