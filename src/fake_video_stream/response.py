"""PacedEmitter を駆動する ASGI レスポンス.

フレームごとに `http.response.body` (more_body=True) を 1 メッセージ送ることで
バッチングせずに flush し、`http.disconnect` をキャンセル信号として扱う。
"""

import asyncio
import contextlib
import logging
from collections.abc import Mapping

from starlette.background import BackgroundTask
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from fake_video_stream.emitter import PacedEmitter, StreamOutcome

logger = logging.getLogger(__name__)


class FrameStreamResponse(Response):
    """フレーム列をチャンク転送で返すレスポンス.

    Content-Length は付けない。ステータスは常に 200 で、送出開始後の
    失敗やクライアント切断は outcome にだけ反映される。
    """

    media_type = "application/octet-stream"

    def __init__(
        self,
        emitter: PacedEmitter,
        headers: Mapping[str, str] | None = None,
        background: BackgroundTask | None = None,
    ):
        self.emitter = emitter
        self.status_code = 200
        self.background = background
        self.outcome: StreamOutcome | None = None

        config = emitter.config
        stream_headers = {
            "x-frame-count": str(config.frame_count),
            "x-frame-size": str(config.frame_size),
            "x-frame-rate": str(config.fps),
            "cache-control": "no-cache, no-store",
        }
        if headers:
            stream_headers.update(headers)
        self.init_headers(stream_headers)

    async def _listen_for_disconnect(
        self, receive: Receive, cancelled: asyncio.Event
    ) -> None:
        try:
            while True:
                message = await receive()
                if message["type"] == "http.disconnect":
                    break
        except Exception as e:
            # receive が壊れた transport も切断として扱う
            logger.debug("Receive failed, treating as disconnect: %s", e)
        cancelled.set()

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )

        async def write(frame: bytes) -> None:
            await send({"type": "http.response.body", "body": frame, "more_body": True})

        cancelled = asyncio.Event()
        listener = asyncio.ensure_future(self._listen_for_disconnect(receive, cancelled))
        try:
            self.outcome = await self.emitter.run(write, cancelled)
        finally:
            listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await listener

        logger.info("Stream ended: %s", self.outcome.value)

        if self.outcome in (StreamOutcome.COMPLETED, StreamOutcome.SOURCE_FAILED):
            try:
                await send({"type": "http.response.body", "body": b"", "more_body": False})
            except Exception as e:
                logger.debug("Failed to close response body: %s", e)

        if self.background is not None:
            await self.background()
