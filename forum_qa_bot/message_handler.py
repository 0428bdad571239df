"""
Agentic Message Handler

Answers Slack questions from forum history using an agentic loop with MCP
tools, citing the threads it used.

Flow:
1. Build LLM messages with system prompt and thread context
2. Send to LLM with tool definitions
3. If LLM returns tool_calls, execute via MCP client
4. Add tool results to messages, collecting permalinks as sources
5. Repeat until LLM returns final response (max iterations)
"""

import json
import logging
from typing import Optional, List, Dict, Any, Callable, Awaitable
from dataclasses import dataclass, field

from .llm_provider import LLMProvider
from .mcp_client import MCPClient, parse_tool_name, tool_result_text
from .thread_context import ThreadContext

logger = logging.getLogger(__name__)

# Maximum iterations for the agentic loop
MAX_ITERATIONS = 10

# Sources kept per answer, and shown when the answer cites none
MAX_SOURCES = 5
DEFAULT_SHOWN_SOURCES = 3

# Type for progress callback
ProgressCallback = Callable[[str], Awaitable[None]]


def build_system_prompt(tool_names: List[str]) -> str:
    """
    Build the system prompt for the forum Q&A bot.

    Args:
        tool_names: List of available tool names
    """
    tool_list = ", ".join(tool_names[:20])
    if len(tool_names) > 20:
        tool_list += f" (and {len(tool_names) - 20} more)"

    return f"""You are a helpful assistant that answers questions using the history of the team's Slack forum channels.

IMPORTANT: You MUST search the forum before answering. Don't guess - use the tools!

## Tool Naming Convention

Tools are namespaced as "server_id__tool_name":
- forum__search_messages - Ranked keyword search over forum messages
- forum__get_thread - Full thread (question and all replies) by channel and thread_ts
- forum__find_experts - People who answer questions about a topic
- forum__list_forum_channels - Which forum channels are indexed
- forum__search_docs - Search the documentation site (when configured)

Available Tools ({len(tool_names)} total): {tool_list}

## Recommended Workflow

1. **Search** with forum__search_messages using the key terms of the question
2. **Read** the most promising threads with forum__get_thread, the answer is usually in the replies
3. **Answer** from what the threads say
4. If nothing relevant turns up, say so and use forum__find_experts to suggest who to ask

## Citations (REQUIRED)

- Every factual claim must come from a forum message or doc you retrieved
- Cite each thread you used by pasting its permalink, e.g. "(see <PERMALINK|#forum-it-help>)"
- Never invent permalinks, people or answers
- If threads disagree, say so and cite both

## IMPORTANT: Slack Formatting Rules

Slack has LIMITED markdown support. Follow these rules:

1. **Commands and config**: wrap in triple backticks (```)
2. **Text formatting**: Use *bold* and _italic_ sparingly
3. **Lists**: Use simple bullet points with - or •
4. **Mentions**: refer to experts with their mention, e.g. <@U123ABC>
5. **Keep it concise**: Slack threads should be scannable

## Guidelines

1. ALWAYS search before answering - don't make up answers
2. If a tool returns an error, explain what went wrong
3. Be conversational and helpful
4. When the question is ambiguous, ask a clarifying question
5. Remember: you're in a Slack thread, so be concise"""


@dataclass
class ToolCallInfo:
    """Information about a tool call for progress updates."""
    server: str
    tool: str
    arguments: Dict[str, Any]
    status: str = "calling"  # "calling", "complete", "error"
    result_preview: Optional[str] = None

    @property
    def detail(self) -> str:
        """Get a brief detail about what this tool is doing."""
        args = self.arguments

        if "query" in args or "topic" in args:
            q = str(args.get("query") or args.get("topic"))
            return f'"{q[:30]}..."' if len(q) > 30 else f'"{q}"'

        if "thread_ts" in args:
            channel = args.get("channel", "")
            return f"`{channel}` thread" if channel else "_thread_"

        if "channel" in args:
            return f"`{args['channel']}`"

        return ""


@dataclass
class Source:
    """A forum thread or doc page an answer can cite."""
    permalink: str
    channel: str = ""
    author: str = ""
    title: str = ""
    ts: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "permalink": self.permalink,
            "channel": self.channel,
            "author": self.author,
            "title": self.title,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Source":
        return cls(
            permalink=d.get("permalink", ""),
            channel=d.get("channel", ""),
            author=d.get("author", ""),
            title=d.get("title", ""),
            ts=d.get("ts", ""),
        )

    def is_referenced_by(self, text: str) -> bool:
        """True if the text cites this source by permalink or thread ts."""
        if self.permalink and self.permalink in text:
            return True
        if self.ts:
            return self.ts in text or f"p{self.ts.replace('.', '')}" in text
        return False


def _source_from_item(item: Dict[str, Any]) -> Source:
    title = item.get("title") or item.get("text") or ""
    title = " ".join(str(title).split())
    if len(title) > 80:
        title = title[:77] + "..."
    return Source(
        permalink=item["permalink"],
        channel=str(item.get("channel") or item.get("space") or ""),
        author=str(item.get("author") or ""),
        title=title,
        ts=str(item.get("thread_ts") or item.get("ts") or ""),
    )


def extract_sources(tool_result: Dict[str, Any]) -> List[Source]:
    """
    Collect every permalink-bearing item in an MCP tool result.

    Returns:
        Sources in order of first appearance
    """
    if not isinstance(tool_result, dict) or "error" in tool_result or tool_result.get("isError"):
        return []

    payload = tool_result.get("structuredContent")
    if payload is None:
        try:
            payload = json.loads(tool_result_text(tool_result) or "null")
        except json.JSONDecodeError:
            return []

    found: List[Source] = []

    def walk(node: Any):
        if isinstance(node, dict):
            if isinstance(node.get("permalink"), str) and node["permalink"]:
                found.append(_source_from_item(node))
            for value in node.values():
                walk(value)
        elif isinstance(node, list):
            for value in node:
                walk(value)

    walk(payload)
    return found


def merge_sources(existing: List[Source], new: List[Source], max_sources: int = MAX_SOURCES) -> List[Source]:
    """Append new sources, skipping duplicate permalinks, up to max_sources."""
    merged = list(existing)
    seen = {s.permalink for s in merged}
    for source in new:
        if len(merged) >= max_sources:
            break
        if source.permalink not in seen:
            seen.add(source.permalink)
            merged.append(source)
    return merged


def select_cited_sources(response_text: str, sources: List[Source]) -> List[Source]:
    """Sources the answer references, or the first few retrieved if it references none."""
    cited = [s for s in sources if s.is_referenced_by(response_text)]
    return cited or sources[:DEFAULT_SHOWN_SOURCES]


@dataclass
class ProcessingResult:
    """Result of processing a message."""
    response_text: str
    used_fallback: bool = False
    actual_model: str = ""
    tools_used: List[Dict[str, Any]] = field(default_factory=list)
    iterations: int = 0
    error: Optional[str] = None
    sources: List[Source] = field(default_factory=list)
    from_cache: bool = False
    cache_id: Optional[int] = None


def format_progress_message(
    tools_in_progress: List[ToolCallInfo],
    tools_completed: List[ToolCallInfo],
) -> str:
    """Format a progress message showing tool calls with details."""
    lines = ["🤔 *Searching the forums...*\n"]

    for tool in tools_completed:
        detail = tool.detail
        detail_str = f" → {detail}" if detail else ""
        if tool.status == "complete":
            lines.append(f"✅ `{tool.tool}`{detail_str}")
        else:
            lines.append(f"❌ `{tool.tool}`{detail_str} (error)")

    for tool in tools_in_progress:
        detail = tool.detail
        detail_str = f" → {detail}" if detail else ""
        lines.append(f"⏳ `{tool.tool}`{detail_str}")

    return "\n".join(lines)


def _parse_arguments(raw_args: Any) -> Dict[str, Any]:
    if not raw_args:
        return {}
    try:
        arguments = json.loads(raw_args)
    except (json.JSONDecodeError, TypeError):
        return {}
    return arguments if isinstance(arguments, dict) else {}


async def process_message(
    user_message: str,
    context: ThreadContext,
    mcp_client: MCPClient,
    llm_provider: LLMProvider,
    on_progress: Optional[ProgressCallback] = None,
) -> ProcessingResult:
    """
    Process a user message through the agentic loop.

    Args:
        user_message: The user's message text
        context: Thread context with conversation history
        mcp_client: MCP client for tool calls
        llm_provider: LLM provider for AI calls
        on_progress: Optional callback for progress updates (receives formatted message)

    Returns:
        ProcessingResult with response, sources and metadata
    """
    context.add_user_message(user_message)

    tools = mcp_client.get_tools_for_llm()
    tool_names = [t["function"]["name"] for t in tools]

    messages = [
        {"role": "system", "content": build_system_prompt(tool_names)}
    ]
    messages.extend(context.get_messages_for_llm(max_messages=15))

    tools_used = []
    tools_completed: List[ToolCallInfo] = []
    sources: List[Source] = []
    iteration = 0
    used_fallback = False
    actual_model = ""

    while iteration < MAX_ITERATIONS:
        iteration += 1
        logger.debug(f"Agentic loop iteration {iteration}/{MAX_ITERATIONS}")

        try:
            response = await llm_provider.call_with_fallback(
                messages=messages,
                tools=tools if tools else None,
                max_tokens=4096,
                temperature=0.0,
            )

            used_fallback = response.used_fallback
            actual_model = response.actual_model

            if response.tool_calls:
                logger.debug(f"LLM requested {len(response.tool_calls)} tool call(s)")

                messages.append({
                    "role": "assistant",
                    "content": response.content or "",
                    "tool_calls": response.tool_calls,
                })
                context.add_assistant_message(response.content, response.tool_calls)

                for tool_call in response.tool_calls:
                    tool_id = tool_call["id"]
                    func = tool_call["function"]
                    full_name = func["name"]
                    arguments = _parse_arguments(func.get("arguments"))
                    server_id, tool_name = parse_tool_name(full_name)

                    tool_info = ToolCallInfo(
                        server=server_id,
                        tool=tool_name,
                        arguments=arguments,
                        status="calling",
                    )

                    if on_progress:
                        await on_progress(format_progress_message([tool_info], tools_completed))

                    logger.info(f"Calling tool: {full_name}")

                    try:
                        tool_result = await mcp_client.call_tool(full_name, arguments)
                    except Exception as e:
                        tool_result = {"error": str(e)}
                    is_error = "error" in tool_result or bool(tool_result.get("isError"))
                    tool_info.status = "error" if is_error else "complete"
                    tools_completed.append(tool_info)

                    tools_used.append({
                        "server": server_id,
                        "tool": tool_name,
                        "arguments": arguments,
                        "detail": tool_info.detail,
                    })
                    sources = merge_sources(sources, extract_sources(tool_result))

                    result_str = json.dumps(tool_result, default=str)
                    messages.append({
                        "role": "tool",
                        "tool_call_id": tool_id,
                        "content": result_str,
                    })
                    context.add_tool_result(tool_id, result_str)

                if on_progress:
                    progress_msg = format_progress_message([], tools_completed)
                    progress_msg += "\n\n💭 _Reading the threads..._"
                    await on_progress(progress_msg)

                continue

            # No tool calls - this is the final response
            final_response = response.content or "I searched the forums but have no answer to give."
            context.add_assistant_message(final_response)

            return ProcessingResult(
                response_text=final_response,
                used_fallback=used_fallback,
                actual_model=actual_model,
                tools_used=tools_used,
                iterations=iteration,
                sources=select_cited_sources(final_response, sources),
            )

        except Exception as e:
            logger.error(f"Error in agentic loop: {e}")
            return ProcessingResult(
                response_text=f"I encountered an error: {str(e)}",
                used_fallback=used_fallback,
                actual_model=actual_model,
                tools_used=tools_used,
                iterations=iteration,
                error=str(e),
                sources=sources[:DEFAULT_SHOWN_SOURCES],
            )

    logger.warning("Max iterations reached in agentic loop")
    return ProcessingResult(
        response_text="I reached the maximum number of tool calls. Here's what I found so far.",
        used_fallback=used_fallback,
        actual_model=actual_model,
        tools_used=tools_used,
        iterations=iteration,
        sources=sources[:DEFAULT_SHOWN_SOURCES],
    )


# =============================================================================
# Slack Formatting
# =============================================================================

FEEDBACK_HINT = "React :+1: if this helped, :-1: if it didn't, :package: to save it for next time"


def format_sources_text(sources: List[Source]) -> str:
    lines = []
    for i, source in enumerate(sources, 1):
        label = source.title or source.permalink
        meta = " · ".join(p for p in (source.channel, source.author) if p)
        lines.append(f"{i}. <{source.permalink}|{label}>" + (f" ({meta})" if meta else ""))
    return "\n".join(lines)


def format_response_for_slack(
    result: ProcessingResult,
    show_metadata: bool = True,
) -> tuple[str, list]:
    """
    Format the processing result for Slack with blocks.

    Args:
        result: ProcessingResult from process_message
        show_metadata: Whether to include tool usage summary

    Returns:
        Tuple of (fallback_text, blocks)
    """
    blocks = []

    if result.from_cache:
        blocks.append({
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": "📦 _Answered from a saved answer_"}
            ]
        })
    elif show_metadata and result.tools_used:
        tool_lines = []
        for t in result.tools_used:
            detail = t.get('detail', '')
            if detail:
                tool_lines.append(f"`{t['tool']}` → {detail}")
            else:
                tool_lines.append(f"`{t['tool']}`")

        if len(tool_lines) > 10:
            tools_text = " • ".join(tool_lines[:10]) + f" _(+{len(tool_lines)-10} more)_"
        else:
            tools_text = " • ".join(tool_lines)

        blocks.append({
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"🔧 {tools_text}"}
            ]
        })
        blocks.append({"type": "divider"})

    blocks.extend(_create_response_blocks(result.response_text))

    if result.sources:
        blocks.append({"type": "divider"})
        blocks.append({
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": truncate_for_slack(f"📚 *Sources*\n{format_sources_text(result.sources)}")}
            ]
        })

    if not result.error:
        blocks.append({
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"_{FEEDBACK_HINT}_"}
            ]
        })

    if result.used_fallback:
        blocks.append({
            "type": "context",
            "elements": [
                {"type": "mrkdwn", "text": f"⚠️ _Used fallback: {result.actual_model}_"}
            ]
        })

    # Fallback text for notifications
    fallback_text = result.response_text[:500] + "..." if len(result.response_text) > 500 else result.response_text

    return fallback_text, blocks


def _create_response_blocks(text: str) -> list:
    """
    Convert response text into Slack blocks, properly handling code blocks.

    Splits text on ``` to separate code blocks from regular text.
    """
    blocks = []
    parts = text.split("```")

    for i, part in enumerate(parts):
        if not part.strip():
            continue

        if i % 2 == 0:
            # Slack limit is ~3000 chars per section
            for chunk in _chunk_text(part.strip(), 2900):
                if chunk:
                    blocks.append({
                        "type": "section",
                        "text": {"type": "mrkdwn", "text": chunk}
                    })
        else:
            code_content = part.strip()
            # Remove language hint if present (e.g., ```bash)
            if code_content and '\n' in code_content:
                first_line = code_content.split('\n')[0]
                if first_line.isalpha() and len(first_line) < 15:
                    code_content = '\n'.join(code_content.split('\n')[1:])

            if code_content:
                blocks.append({
                    "type": "rich_text",
                    "elements": [
                        {
                            "type": "rich_text_preformatted",
                            "elements": [
                                {"type": "text", "text": code_content[:3000]}
                            ]
                        }
                    ]
                })

    if not blocks and text.strip():
        blocks.append({
            "type": "section",
            "text": {"type": "mrkdwn", "text": truncate_for_slack(text, 2900)}
        })

    return blocks


def _chunk_text(text: str, max_length: int) -> List[str]:
    """Split text into chunks at paragraph boundaries."""
    if len(text) <= max_length:
        return [text]

    chunks = []
    current = ""

    for paragraph in text.split("\n\n"):
        if len(current) + len(paragraph) + 2 <= max_length:
            current += ("\n\n" if current else "") + paragraph
        else:
            if current:
                chunks.append(current)
            current = truncate_for_slack(paragraph, max_length)

    if current:
        chunks.append(current)

    return chunks


def truncate_for_slack(text: str, max_length: int = 3000) -> str:
    """
    Truncate text to fit Slack's message limits.

    Slack block text has a ~3000 character limit.
    """
    if len(text) <= max_length:
        return text

    truncated = text[:max_length - 50]
    # Try to cut at a sensible point
    last_newline = truncated.rfind('\n')
    if last_newline > max_length - 500:
        truncated = truncated[:last_newline]

    return truncated + "\n\n... _(response truncated)_"
