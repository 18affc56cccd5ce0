"""
Transformation Stream Parsing

Tolerant server-sent-events reader for the transformation service:

- ``iter_sse_data`` groups ``data:`` lines into events (blank line ends one)
- ``StreamAccumulator`` decodes each event and appends content fragments
- ``extract_result_url`` finds the first markdown image link in the text

A malformed event is counted, logged and skipped. Only an explicit error
payload from the upstream aborts the read.
"""

import json
import re
from typing import AsyncIterator, List, Optional

from brickai.core.exceptions import TransformStreamError
from brickai.core.logging import get_logger
from brickai.core.metrics import record_stream_event

logger = get_logger(__name__)

DONE_MARKER = "[DONE]"

# ![alt](https://host/path.png) with optional <...> wrapping and "title"
MARKDOWN_IMAGE_RE = re.compile(
    r'!\[[^\]]*\]\(\s*<?(https?://[^)\s>]+)>?(?:\s+"[^"]*")?\s*\)'
)


async def iter_sse_data(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield the joined ``data`` payload of each event in a line stream."""
    buffer: List[str] = []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            buffer.append(value)

    if buffer:
        yield "\n".join(buffer)


def extract_result_url(text: str) -> Optional[str]:
    """First markdown image link in ``text``, or None."""
    match = MARKDOWN_IMAGE_RE.search(text)
    return match.group(1) if match else None


def _fragment_from(choice: dict) -> Optional[str]:
    for container in ("delta", "message"):
        part = choice.get(container)
        if isinstance(part, dict) and isinstance(part.get("content"), str):
            return part["content"]
    return None


class StreamAccumulator:
    """In-memory buffer for one pipeline run's streamed output."""

    def __init__(self):
        self._parts: List[str] = []
        self.done = False
        self.events = 0
        self.malformed = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def feed(self, payload: str) -> bool:
        """Consume one event payload. Returns True once the end marker is seen."""
        self.events += 1
        payload = payload.strip()

        if payload == DONE_MARKER:
            self.done = True
            record_stream_event("done")
            return True

        try:
            message = json.loads(payload)
        except ValueError:
            self._skip("undecodable", payload)
            return False

        if not isinstance(message, dict):
            self._skip("not_an_object", payload)
            return False

        error = message.get("error")
        if error:
            detail = error.get("message") if isinstance(error, dict) else str(error)
            raise TransformStreamError(f"Transformation service reported an error: {detail}")

        choices = message.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            record_stream_event("empty")
            return False

        fragment = _fragment_from(choices[0])
        if fragment:
            self._parts.append(fragment)
            record_stream_event("content")
        else:
            record_stream_event("empty")
        return False

    def _skip(self, reason: str, payload: str):
        self.malformed += 1
        record_stream_event("malformed")
        logger.warning(
            "stream_event_malformed",
            reason=reason,
            payload_preview=payload[:120]
        )
