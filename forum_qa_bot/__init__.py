"""
Forum Q&A Slack Bot

A Slack bot that answers questions from the history of forum-* channels.
Indexed messages are exposed to the LLM through an MCP server over HTTP
JSON-RPC.

Features:
- @mention handling with "thinking" indicators and cited answers
- Message database with ranked search and thread reconstruction
- Expert discovery from who answers what in forum threads
- Optional external documentation search (Confluence-style API)
- Analytics: questions, answers, cache hits, 👍/👎 feedback
- LLM fallback from Claude (OpenRouter) to GPT-4o (OpenAI)
"""

__version__ = "1.0.0"
