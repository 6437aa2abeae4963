"""MQTT subscription routing.

Maps subscription patterns (with ``+`` / ``#`` wildcards) to async
handlers and fans inbound messages out to every handler whose pattern
matches.  Shared by the real transport and its test double so that
both honour the same matching rules.

The router is an internal component: consumers register handlers via
``TransportPort.subscribe()``.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, str], Awaitable[Any]]
"""Async callback receiving ``(topic, payload)`` for each inbound message."""


def topic_matches(pattern: str, topic: str) -> bool:
    """Return True when *topic* matches the subscription *pattern*.

    Implements MQTT 3.1.1 filter semantics: ``+`` matches exactly one
    level, a trailing ``#`` matches the parent level and everything
    below it.  Topics starting with ``$`` never match a leading
    wildcard.
    """
    if topic.startswith("$") and pattern[:1] in ("+", "#"):
        return False

    pattern_levels = pattern.split("/")
    topic_levels = topic.split("/")

    for index, level in enumerate(pattern_levels):
        if level == "#":
            return index == len(pattern_levels) - 1
        if index >= len(topic_levels):
            return False
        if level != "+" and level != topic_levels[index]:
            return False

    return len(pattern_levels) == len(topic_levels)


class TopicRouter:
    """Routes inbound messages to handlers registered per pattern."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[MessageHandler]] = {}

    def register(self, pattern: str, handler: MessageHandler) -> bool:
        """Register *handler* for *pattern*.

        Returns:
            True when *pattern* is new (the caller must subscribe on
            the broker), False when it was already routed.

        Raises:
            ValueError: If *pattern* is empty or malformed.
        """
        if not pattern or "#" in pattern[:-1]:
            msg = f"Invalid subscription pattern {pattern!r}"
            raise ValueError(msg)
        is_new = pattern not in self._handlers
        self._handlers.setdefault(pattern, []).append(handler)
        return is_new

    def handlers_for(self, topic: str) -> list[MessageHandler]:
        """Every handler whose pattern matches *topic*, in registration order."""
        return [
            handler
            for pattern, handlers in self._handlers.items()
            if topic_matches(pattern, topic)
            for handler in handlers
        ]

    async def route(self, topic: str, payload: str) -> int:
        """Invoke each matching handler once.

        Handler exceptions are logged and never propagate, so one
        faulty handler cannot stop message consumption.

        Returns:
            The number of handlers invoked.
        """
        handlers = self.handlers_for(topic)
        if not handlers:
            logger.debug("No handler for %s", topic)
        for handler in handlers:
            try:
                await handler(topic, payload)
            except Exception:
                logger.exception(
                    "Error in message handler for %s",
                    topic,
                    extra={"topic": topic},
                )
        return len(handlers)

    @property
    def subscriptions(self) -> list[str]:
        """Patterns that must be subscribed on the broker."""
        return list(self._handlers)
