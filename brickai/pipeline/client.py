"""
Transformation Service Client

Streams a chat-completions style request whose reply carries the generated
image as a markdown link. The connection is held open only while the
stream is read; every read is bounded by the idle timeout.
"""

from typing import Any, Dict

import httpx

from brickai.core.config import Settings
from brickai.core.exceptions import TransformStreamError
from brickai.core.logging import get_logger
from brickai.pipeline.stream import StreamAccumulator, iter_sse_data

logger = get_logger(__name__)


class TransformationClient:

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self._http = http_client

    def build_request_body(self, image_url: str, directive: str) -> Dict[str, Any]:
        return {
            "model": self.settings.TRANSFORM_MODEL,
            "stream": True,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": directive},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
        }

    async def stream(self, image_url: str, directive: str) -> StreamAccumulator:
        """
        Run one transformation and return the accumulated stream.

        Raises:
            TransformStreamError: non-2xx response, transport failure, idle
                timeout or an error payload inside the stream
        """
        (api_key,) = self.settings.require("TRANSFORM_API_KEY")
        idle = self.settings.STREAM_IDLE_TIMEOUT_SECONDS
        accumulator = StreamAccumulator()

        try:
            async with self._http.stream(
                "POST",
                self.settings.TRANSFORM_API_URL,
                json=self.build_request_body(image_url, directive),
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Accept": "text/event-stream",
                },
                timeout=httpx.Timeout(idle, connect=min(idle, 10.0)),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise TransformStreamError(
                        f"Transformation service returned HTTP {response.status_code}",
                        http_status=response.status_code
                    )

                async for payload in iter_sse_data(response.aiter_lines()):
                    if accumulator.feed(payload):
                        break
        except httpx.TimeoutException:
            raise TransformStreamError("Transformation stream went idle")
        except httpx.HTTPError as e:
            raise TransformStreamError(f"Transformation stream failed: {type(e).__name__}")

        logger.info(
            "transform_stream_finished",
            events=accumulator.events,
            malformed=accumulator.malformed,
            saw_done=accumulator.done,
            chars=len(accumulator.text)
        )
        return accumulator
