"""
Server-Sent Events Framing

Splits a text/event-stream body into SseFrame objects. Operates on raw
lines so it works on any async byte source (aiohttp's StreamReader in
production, plain lists in tests).

Wire format (one frame, terminated by a blank line):
    : optional comment / heartbeat
    id: 42
    event: message
    data: {"channel": "live_gappers", ...}
"""
from __future__ import annotations

from typing import AsyncIterable, AsyncIterator, Iterable, Optional

from gapper_client.models.events import SseFrame

SSE_CONTENT_TYPE = "text/event-stream"


def parse_sse_frame(raw_frame: str) -> Optional[SseFrame]:
    """
    Parse one frame's text (without the terminating blank line).

    Returns None for frames that carry nothing at all.
    """
    text = raw_frame.replace("\r", "")
    if not text.strip():
        return None

    event: Optional[str] = None
    event_id: Optional[str] = None
    comment: Optional[str] = None
    data_lines: list[str] = []

    for line in text.split("\n"):
        if line.startswith(":"):
            value = line[1:].strip()
            comment = f"{comment}\n{value}" if comment else value
            continue

        name, sep, value = line.partition(":")
        if not sep:
            value = ""
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            event = value or None
        elif name == "id":
            event_id = value or None
        elif name == "data":
            data_lines.append(value)

    return SseFrame(
        event=event,
        id=event_id,
        data="\n".join(data_lines) if data_lines else None,
        comment=comment,
    )


def _frames_from_lines(lines: Iterable[str]) -> tuple[list[SseFrame], list[str]]:
    """Collect complete frames; return them plus the unterminated remainder."""
    frames: list[SseFrame] = []
    pending: list[str] = []
    for line in lines:
        if line == "":
            frame = parse_sse_frame("\n".join(pending))
            pending = []
            if frame is not None:
                frames.append(frame)
            continue
        pending.append(line)
    return frames, pending


async def iter_sse_frames(source: AsyncIterable[bytes]) -> AsyncIterator[SseFrame]:
    """
    Yield frames from an async iterable of byte lines.

    A trailing frame without a blank line is still delivered when the
    source ends.
    """
    pending: list[str] = []
    async for chunk in source:
        text = chunk.decode("utf-8", errors="replace").replace("\r", "")
        # A chunk may hold several lines or a partial one; the last piece is
        # carried over until its newline arrives.
        pieces = text.split("\n")
        if pending:
            pieces[0] = pending.pop() + pieces[0]
        carry = pieces.pop()
        frames, pending = _frames_from_lines(pending + pieces)
        for frame in frames:
            yield frame
        pending.append(carry)

    tail = parse_sse_frame("\n".join(pending))
    if tail is not None:
        yield tail
