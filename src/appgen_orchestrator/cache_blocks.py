from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import BaseMessage, HumanMessage

from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

CACHE_MARKER_KEY = "cache_control"
CACHE_MARKER: dict[str, str] = {"type": "ephemeral"}
TRUNCATION_SUFFIX = " (truncated due to token limit)"
TRUNCATE_MIN_LENGTH = 100
TRUNCATE_RATIO = 0.6


@dataclass(frozen=True)
class CacheBlock:
    """Span of history covered by one cache marker, ``start``..``end`` inclusive."""

    position: int
    start: int
    end: int
    size: int


def message_length(message: BaseMessage) -> int:
    """Length of a message's textual payload in characters.

    String content counts directly; block content sums each block's ``text``
    (or nested ``content``) length. Blocks without text count as zero.
    """
    content = message.content
    if isinstance(content, str):
        return len(content)
    total = 0
    for item in content:
        if isinstance(item, str):
            total += len(item)
        elif isinstance(item, dict):
            value = item.get("text") or item.get("content") or ""
            total += len(value) if isinstance(value, (str, list)) else 0
    return total


def has_cache_marker(message: BaseMessage) -> bool:
    content = message.content
    if not isinstance(content, list):
        return False
    return any(isinstance(item, dict) and CACHE_MARKER_KEY in item for item in content)


def add_cache_marker(message: BaseMessage) -> bool:
    """Mark the last content block of ``message``. Returns False when it has no blocks."""
    content = message.content
    if not isinstance(content, list) or not content:
        return False
    last = content[-1]
    if isinstance(last, str):
        last = {"type": "text", "text": last}
        content[-1] = last
    if not isinstance(last, dict):
        return False
    # Only the trailing block may carry the marker.
    for item in content[:-1]:
        if isinstance(item, dict):
            item.pop(CACHE_MARKER_KEY, None)
    last[CACHE_MARKER_KEY] = dict(CACHE_MARKER)
    return True


def remove_cache_marker(message: BaseMessage) -> bool:
    content = message.content
    if not isinstance(content, list):
        return False
    removed = False
    for item in content:
        if isinstance(item, dict) and CACHE_MARKER_KEY in item:
            del item[CACHE_MARKER_KEY]
            removed = True
    return removed


def message_text(message: BaseMessage) -> str:
    """Text of a message; block content keeps only text-typed blocks joined by spaces."""
    content = message.content
    if isinstance(content, str):
        return content
    return " ".join(
        item.get("text", "")
        for item in content
        if isinstance(item, dict) and item.get("type") == "text"
    )


class CacheBlockManager:
    """Allocates the provider's small budget of cache markers across a conversation.

    The system message pre-consumes ``system_reservation`` blocks when system caching is
    enabled. New messages are marked while spare blocks exist; once the budget is spent,
    growing uncached content triggers a redistribution that merges the smallest cached
    span into its successor and moves a marker onto the newest message.

    ``used_blocks`` is mutated only here and never exceeds ``max_blocks``. No method raises:
    messages without content blocks simply stay uncached.
    """

    def __init__(
        self,
        *,
        max_blocks: int = 4,
        threshold: int = 128,
        system_message_cached: bool = True,
        system_reservation: int = 2,
    ) -> None:
        if system_reservation > max_blocks:
            raise ValueError("system_reservation must not exceed max_blocks")
        self.max_blocks = max_blocks
        self.threshold = threshold
        self.system_message_cached = system_message_cached
        self.system_reservation = system_reservation
        self.used_blocks = self.baseline
        self.accumulated_uncached_length = 0
        self.last_redistribution_length = 0

    @classmethod
    def from_settings(cls, settings: RuntimeSettings) -> "CacheBlockManager":
        return cls(
            max_blocks=settings.max_cache_blocks,
            threshold=settings.cache_threshold,
            system_message_cached=settings.system_message_cached,
            system_reservation=settings.system_cache_blocks,
        )

    @property
    def baseline(self) -> int:
        return self.system_reservation if self.system_message_cached else 0

    @property
    def remaining_blocks(self) -> int:
        return self.max_blocks - self.used_blocks

    def can_add_block(self) -> bool:
        return self.used_blocks < self.max_blocks

    def reset(self, keep_system_cache: bool = True) -> None:
        """Reset the budget when the conversation is pruned back to the system message."""
        self.used_blocks = self.baseline if keep_system_cache else 0
        self.accumulated_uncached_length = 0

    def should_cache_message(self, index: int, length: int, total_messages: int) -> bool:
        """Whether the message at ``index`` may take a cache block.

        The system message and the initial human turn (indices 0 and 1) are never
        marked here.
        """
        return self.can_add_block() and index >= 2

    def add_message_with_smart_caching(self, history: list[BaseMessage], message: BaseMessage) -> bool:
        """Append ``message`` to ``history``, marking it as a cache boundary when allowed.

        Args:
            history: Conversation history owned by the caller; appended in place.
            message: Message to append.

        Returns:
            True when the message received a cache marker.
        """
        length = message_length(message)
        index = len(history)
        cached = False
        if self.should_cache_message(index, length, index + 1) and add_cache_marker(message):
            self.used_blocks += 1
            self.accumulated_uncached_length = 0
            cached = True
        else:
            self.accumulated_uncached_length += length
        history.append(message)
        return cached

    def total_length(self, history: list[BaseMessage]) -> int:
        return sum(message_length(message) for message in history)

    def needs_redistribution(self, total_length: int) -> bool:
        if self.remaining_blocks >= 1:
            return False
        return (
            self.accumulated_uncached_length > self.threshold
            or abs(total_length - self.last_redistribution_length) > self.threshold
        )

    def find_cached_indices(self, history: list[BaseMessage], start: int = 1) -> list[int]:
        return [index for index in range(start, len(history)) if has_cache_marker(history[index])]

    def cache_block_sizes(self, history: list[BaseMessage], cached_indices: list[int]) -> list[CacheBlock]:
        blocks: list[CacheBlock] = []
        for position, end in enumerate(cached_indices):
            start = 1 if position == 0 else cached_indices[position - 1] + 1
            size = sum(message_length(history[index]) for index in range(start, end + 1))
            blocks.append(CacheBlock(position=position, start=start, end=end, size=size))
        return blocks

    def redistribute_cache_if_needed(self, history: list[BaseMessage]) -> bool:
        """Rebalance cache markers once the budget is spent and the uncached tail has grown.

        With at most two boundaries in play the newest boundary is moved onto the last
        message. Otherwise the boundary covering the smallest span loses its marker, which
        folds that span into the next boundary, and the freed block marks the last message.

        Returns:
            True when markers were changed.
        """
        if not history:
            return False
        total = self.total_length(history)
        if not self.needs_redistribution(total):
            return False

        logger.info(
            "Redistributing cache blocks (used=%d, uncached=%d, total=%d)",
            self.used_blocks,
            self.accumulated_uncached_length,
            total,
        )
        last = history[-1]
        cached_indices = self.find_cached_indices(history)

        if cached_indices and cached_indices[-1] == len(history) - 1:
            # The newest message is already a boundary; nothing to move or merge.
            self.last_redistribution_length = total
            self.accumulated_uncached_length = 0
            return False

        if not isinstance(last.content, list) or not last.content:
            logger.debug("Last message has no content blocks; leaving markers in place")
            return False

        if len(cached_indices) <= 2:
            if cached_indices and not self.can_add_block():
                remove_cache_marker(history[cached_indices[-1]])
                self.used_blocks -= 1
            if self.can_add_block() and add_cache_marker(last):
                self.used_blocks += 1
            self.accumulated_uncached_length = 0
            self.last_redistribution_length = total
            return True

        blocks = self.cache_block_sizes(history, cached_indices)
        smallest = min(blocks, key=lambda block: (block.size, block.position))
        logger.debug("Merging cache block ending at %d (size=%d) into its successor", smallest.end, smallest.size)
        if remove_cache_marker(history[smallest.end]):
            self.used_blocks -= 1
        if self.remaining_blocks > 0:
            if add_cache_marker(last):
                self.used_blocks += 1
            else:
                logger.warning("Last message could not be marked after cache merge")
            self.accumulated_uncached_length = 0
            self.last_redistribution_length = total
        return True

    def handle_token_limit(self, history: list[BaseMessage]) -> None:
        """Collapse ``history`` in place after the provider reports context overflow.

        Keeps the system message plus the most recent human turn, truncated to 60% of its
        text (with a suffix) when longer than 100 characters. Without a human turn only the
        system message survives. The block budget returns to the system baseline.
        """
        if len(history) <= 1:
            return
        system_message = history[0]
        latest_human: BaseMessage | None = None
        for index in range(len(history) - 1, 0, -1):
            if history[index].type == "human":
                latest_human = history[index]
                break

        if latest_human is None:
            history[:] = [system_message]
            logger.warning("Token limit reached with no human message; history reduced to system prompt")
        else:
            original = message_text(latest_human)
            truncated = original
            if len(original) > TRUNCATE_MIN_LENGTH:
                truncated = original[: int(len(original) * TRUNCATE_RATIO)] + TRUNCATION_SUFFIX
            history[:] = [system_message, HumanMessage(content=truncated)]
            logger.warning("Token limit reached; human message reduced from %d to %d chars", len(original), len(truncated))

        self.used_blocks = self.baseline
        self.accumulated_uncached_length = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "used_blocks": self.used_blocks,
            "max_blocks": self.max_blocks,
            "accumulated_uncached_length": self.accumulated_uncached_length,
            "last_redistribution_length": self.last_redistribution_length,
        }
