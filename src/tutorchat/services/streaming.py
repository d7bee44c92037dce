from __future__ import annotations

"""Chunked delivery of a completed tutor reply.

The response generator returns the whole reply at once; the streamer replays
it as a typing indicator plus a sequence of small chunks so the client can
render it progressively. Splitting is a pure function so the chunk boundaries
for a given text never change, and ``"".join(chunks) == text`` always holds.
"""

import asyncio
import logging
import re
from typing import Any, AsyncIterator, Awaitable, Callable, List, Tuple

from ..domain.protocol import EVENT_AI_MESSAGE_CHUNK, EVENT_AI_TYPING, chunk_payload


logger = logging.getLogger("tutorchat.streaming")

OutboundEvent = Tuple[str, Any]
Emit = Callable[[str, Any], Awaitable[None]]

# A word together with the whitespace around it. Consecutive matches tile any
# string that contains at least one non-space character.
_TOKEN_RE = re.compile(r"\s*\S+\s*")


def split_into_chunks(text: str, words_per_chunk: int = 3, max_chunk_chars: int = 80) -> List[str]:
    if not text:
        return []
    words_per_chunk = max(1, words_per_chunk)
    max_chunk_chars = max(1, max_chunk_chars)

    tokens = _TOKEN_RE.findall(text)
    if not tokens:
        # whitespace only
        tokens = [text]

    grouped = ["".join(tokens[i : i + words_per_chunk]) for i in range(0, len(tokens), words_per_chunk)]

    chunks: List[str] = []
    for piece in grouped:
        while len(piece) > max_chunk_chars:
            chunks.append(piece[:max_chunk_chars])
            piece = piece[max_chunk_chars:]
        if piece:
            chunks.append(piece)
    return chunks


class ChunkStreamer:
    """One-shot replay of a completed reply as delivery events.

    ``typing_active`` tells the streamer the client already shows the typing
    indicator (it was switched on when the request was dispatched), so the
    opening ``ai_typing(true)`` is not repeated.
    """

    def __init__(
        self,
        text: str,
        *,
        words_per_chunk: int = 3,
        max_chunk_chars: int = 80,
        delay_ms: int = 30,
        typing_active: bool = False,
    ) -> None:
        self.text = text
        self.chunks = split_into_chunks(text, words_per_chunk, max_chunk_chars)
        self._delay = max(0, delay_ms) / 1000.0
        self._typing_active = typing_active
        self._started = False

    async def events(self) -> AsyncIterator[OutboundEvent]:
        if self._started:
            raise RuntimeError("ChunkStreamer can only be consumed once")
        self._started = True

        if not self._typing_active:
            yield EVENT_AI_TYPING, True
        for chunk in self.chunks:
            yield EVENT_AI_MESSAGE_CHUNK, chunk_payload(chunk, False)
            # Hand the loop to other connections between chunks.
            await asyncio.sleep(self._delay)
        yield EVENT_AI_MESSAGE_CHUNK, chunk_payload("", True)
        yield EVENT_AI_TYPING, False

    async def deliver(self, emit: Emit) -> str:
        """Emit every event through ``emit`` and return the delivered text.

        If emitting fails midway the typing indicator is switched off (best
        effort) before the error propagates.
        """
        delivered: List[str] = []
        typing_on = self._typing_active
        try:
            async for event, payload in self.events():
                if event == EVENT_AI_TYPING:
                    typing_on = bool(payload)
                await emit(event, payload)
                if event == EVENT_AI_MESSAGE_CHUNK and not payload["isComplete"]:
                    delivered.append(payload["content"])
        except Exception:
            if typing_on:
                try:
                    await emit(EVENT_AI_TYPING, False)
                except Exception:
                    logger.debug("Could not reset typing indicator after stream failure", exc_info=True)
            raise
        return "".join(delivered)
