"""
Transports — the outbound delivery mechanism behind the dispatcher.

Provides:
- TransportError: raised for configuration problems, never for a failed send
- Transport: abstract base, one ``deliver`` call per attempt
- NoopTransport: logs and reports success (development, tests)
- html_to_plain: plain-text alternative for HTML bodies

A transport reports every delivery outcome as a DeliveryResult. It does
not retry and does not enforce its own timeout — the dispatcher owns both,
so every attempt is counted against the record's attempt budget.
"""
from __future__ import annotations

import abc
import re
import uuid
import structlog
from typing import Any

from models.schemas import DeliveryResult

logger = structlog.get_logger()


class TransportError(Exception):
    """Base exception for transport setup and configuration problems."""

    def __init__(self, message: str, transport: str = ""):
        self.transport = transport
        super().__init__(message)


class Transport(abc.ABC):
    """Base class for all transports."""

    name: str = "base"

    def __init__(self):
        self._initialized = False

    async def initialize(self) -> None:
        self._initialized = True

    @abc.abstractmethod
    async def deliver(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        ...

    async def health_check(self) -> dict[str, Any]:
        return {"transport": self.name, "initialized": self._initialized}

    async def close(self) -> None:
        pass


class NoopTransport(Transport):
    """Accepts every message without sending anything."""

    name = "noop"

    def __init__(self):
        super().__init__()
        self.delivered = 0

    async def deliver(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        self.delivered += 1
        message_id = f"noop-{uuid.uuid4().hex[:12]}"
        logger.debug("noop_delivery", subject=subject, message_id=message_id)
        return DeliveryResult.success(message_id)


def looks_like_html(body: str) -> bool:
    return bool(re.search(r"<[a-zA-Z][^>]*>", body))


def html_to_plain(html: str) -> str:
    """Best-effort HTML → plain text without external dependencies."""
    # Remove style/script blocks
    text = re.sub(r"<(style|script)[^>]*>.*?</\1>", "", html, flags=re.DOTALL | re.IGNORECASE)
    # Block elements → newlines
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|h[1-6]|li|tr)>", "\n", text, flags=re.IGNORECASE)
    # Keep link targets visible
    text = re.sub(r'<a\s[^>]*href="([^"]+)"[^>]*>(.*?)</a>', r"\2 (\1)", text,
                  flags=re.DOTALL | re.IGNORECASE)
    # Strip remaining tags
    text = re.sub(r"<[^>]+>", "", text)
    # Decode entities
    text = text.replace("&lt;", "<").replace("&gt;", ">")
    text = text.replace("&nbsp;", " ").replace("&quot;", '"').replace("&amp;", "&")
    # Collapse whitespace
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n\s*(\n\s*)+", "\n\n", text)
    return "\n".join(line.strip() for line in text.strip().splitlines())
