from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Protocol

from .context import NO_CONTEXT_MARKER
from .errors import EmptyQueryError

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a documentation assistant. Answer only from the provided sources. "
    "If the sources contain no relevant information, say that the documents do not cover it. "
    "Keep the answer concise and structured, and always cite the source."
)

ANSWER_RULES = """Rules:
1. If the question names a specific product (name, article number, model), answer only about that product and use only sources whose "Product:" field matches it.
2. Do not mix characteristics of different products, even when they appear in the same section.
3. Copy values from tables exactly as written, including ranges and units. Do not round or invent values.
4. When a source contains a table, present it as a Markdown table.
5. Cite every source you use at the end of the answer as: "Source: <document>, section <section>, page <page>"."""

NO_CONTEXT_INSTRUCTION = (
    "No sources were found for this question. Tell the user that the documents contain "
    "no information about it and ask them to clarify the product or topic."
)


def build_user_message(context: str, query: str) -> str:
    """Render the user message sent to the language model.

    The context block comes first and is inserted verbatim, followed by the
    answering instructions and the literal query.

    Args:
        context: Rendered context from `build_context`.
        query: The user's question, inserted unchanged.

    Returns:
        The complete user message.

    Raises:
        EmptyQueryError: `query` is empty or whitespace only.
    """
    if not query or not query.strip():
        raise EmptyQueryError("Cannot build a prompt for an empty query")

    has_context = bool(context.strip()) and context != NO_CONTEXT_MARKER
    sources = context if has_context else NO_CONTEXT_MARKER
    task = (
        "Task: answer the user's question using only the sources above. "
        "If the sources do not contain the answer, say so."
    )
    instructions = f"{task}\n\n{ANSWER_RULES}" if has_context else f"{task}\n\n{NO_CONTEXT_INSTRUCTION}"

    return f"Sources:\n{sources}\n\n{instructions}\n\nUser question: {query}\n\nAnswer:"


def compose_system_prompt(template: str, active_prompt: str | None = None) -> str:
    """Prefix the system template with an operator-maintained prompt, when present."""
    if not active_prompt:
        return template
    return f"{active_prompt}\n\n{template}".strip()


def build_messages(system_prompt: str, user_message: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_message},
    ]


class PromptTemplateSource(Protocol):
    def load(self) -> str: ...

    def invalidate(self) -> None: ...


class PromptTemplateStore:
    """File-backed system prompt template, cached until `invalidate` is called."""

    def __init__(self, path: str | Path, fallback: str = DEFAULT_SYSTEM_PROMPT):
        self.path = Path(path)
        self.fallback = fallback
        self._lock = threading.Lock()
        self._cached: str | None = None

    def load(self) -> str:
        """Return the cached template, reading it from disk on first use.

        An unreadable file yields the built-in fallback, which is cached too
        so a missing file is not retried on every request.
        """
        with self._lock:
            if self._cached is None:
                try:
                    self._cached = self.path.read_text(encoding="utf-8").strip()
                except OSError as exc:
                    logger.warning("Failed to load system prompt template from %s: %s", self.path, exc)
                    self._cached = self.fallback
            return self._cached

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
