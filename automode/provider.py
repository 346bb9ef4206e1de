"""
Provider - Abstraktion über den AI Provider.

Die Engine sieht nur einen async Stream von ProviderMessages.
ClaudeProvider setzt das mit dem Claude Code SDK um.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from claude_code_sdk import ClaudeCodeOptions, query

from .cancellation import CancellationToken

log = logging.getLogger(__name__)

DEFAULT_ALLOWED_TOOLS = ["Read", "Write", "Edit", "Bash", "Glob", "Grep"]


@dataclass
class ProviderMessage:
    """
    Eine Nachricht aus dem Provider-Stream.

    type ist "text", "tool_use", "result" oder "error".
    """
    type: str
    text: str = ""
    tool: str | None = None
    tool_input: dict[str, Any] = field(default_factory=dict)
    is_error: bool = False
    cost_usd: float | None = None
    duration_ms: int | None = None


class Provider(Protocol):
    def execute_query(
        self,
        prompt: str,
        *,
        model: str | None,
        cwd: str,
        token: CancellationToken,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ProviderMessage]: ...


class ClaudeProvider:
    """Provider auf Basis von claude_code_sdk.query."""

    def __init__(self, allowed_tools: list[str] | None = None):
        self.allowed_tools = allowed_tools or list(DEFAULT_ALLOWED_TOOLS)

    def _get_options(self, model: str | None, cwd: str, system_prompt: str | None) -> ClaudeCodeOptions:
        """Erstellt die Agent Options."""
        return ClaudeCodeOptions(
            system_prompt=system_prompt,
            allowed_tools=self.allowed_tools,
            cwd=cwd,
            model=model,
        )

    async def execute_query(
        self,
        prompt: str,
        *,
        model: str | None,
        cwd: str,
        token: CancellationToken,
        system_prompt: str | None = None,
    ) -> AsyncIterator[ProviderMessage]:
        """Streamt die Antwort. Prüft den Token vor jeder Nachricht."""
        token.raise_if_cancelled()
        options = self._get_options(model, cwd, system_prompt)

        async for message in query(prompt=prompt, options=options):
            token.raise_if_cancelled()

            # Text und Tool Calls
            if hasattr(message, 'content') and isinstance(message.content, list):
                for block in message.content:
                    if hasattr(block, 'name'):
                        yield ProviderMessage(
                            type="tool_use",
                            tool=block.name,
                            tool_input=getattr(block, 'input', {}) or {},
                        )
                    elif hasattr(block, 'text'):
                        yield ProviderMessage(type="text", text=block.text)

            # Final Result
            if hasattr(message, 'total_cost_usd'):
                is_error = bool(getattr(message, 'is_error', False))
                yield ProviderMessage(
                    type="error" if is_error else "result",
                    text=getattr(message, 'result', None) or "",
                    is_error=is_error,
                    cost_usd=message.total_cost_usd,
                    duration_ms=getattr(message, 'duration_ms', None),
                )
