"""FastAPI application: synthetic video stream server.

クエリパラメータ (seed / duration / fps / bitrate) で指定された
擬似ランダムなフレーム列を、一定間隔でチャンク転送する。
"""

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from uvicorn.config import LOG_LEVELS

from fake_video_stream.config import StreamConfig
from fake_video_stream.emitter import FrameBufferError, PacedEmitter
from fake_video_stream.params import ParameterError, resolve_params
from fake_video_stream.response import FrameStreamResponse

logger = logging.getLogger(__name__)

DEFAULT_PORT = 9001

# Go の http.HandleFunc と同様に全メソッドを受け付ける
VIDEO_METHODS = ["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理."""
    logger.info("fake-video-stream server starting (defaults=%s)", StreamConfig())
    yield
    logger.info("fake-video-stream server shutting down")


app = FastAPI(
    title="fake-video-stream",
    description="Synthetic paced video stream for player/proxy/load testing",
    version="0.1.0",
    lifespan=lifespan,
)


def _query_params(request: Request) -> dict[str, list[str]]:
    """クエリパラメータをキー → 値リストに変換する (同一キーは出現順を保持)."""
    query = request.query_params
    return {key: query.getlist(key) for key in query.keys()}


def _error_response(e: ParameterError | FrameBufferError) -> PlainTextResponse:
    logger.info("Rejected stream request: %s", e)
    return PlainTextResponse(str(e), status_code=500)


# ============================================================
# ヘルスチェック
# ============================================================


@app.get("/api/healthz")
async def healthz() -> dict:
    """ヘルスチェック."""
    defaults = StreamConfig()
    return {
        "status": "healthy",
        "defaults": {
            "seed": defaults.seed,
            "duration": defaults.duration_ms,
            "fps": defaults.fps,
            "bitrate": defaults.bitrate,
        },
    }


# ============================================================
# ストリーム情報
# ============================================================


class StreamInfo(BaseModel):
    """ストリームのフレーム構成."""

    seed: int
    duration: int
    fps: int
    bitrate: int
    frame_count: int
    frame_size: int
    frame_interval_ms: float
    content_length: int

    @classmethod
    def from_config(cls, config: StreamConfig) -> "StreamInfo":
        return cls(
            seed=config.seed,
            duration=config.duration_ms,
            fps=config.fps,
            bitrate=config.bitrate,
            frame_count=config.frame_count,
            frame_size=config.frame_size,
            frame_interval_ms=config.frame_interval * 1000,
            content_length=config.content_length,
        )


@app.get("/video/info", response_model=StreamInfo)
async def video_info(request: Request):
    """ストリームを送出せずに、同じパラメータでのフレーム構成を返す."""
    try:
        config = resolve_params(_query_params(request))
    except ParameterError as e:
        return _error_response(e)
    return StreamInfo.from_config(config)


# ============================================================
# ストリーム配信
# ============================================================


@app.api_route("/video", methods=VIDEO_METHODS)
async def video(request: Request):
    """擬似ランダムなフレーム列を 1/fps 秒間隔で配信する.

    パラメータ検証はフレーム送出前に完了する。
    検証エラーは 500 + プレーンテキストで返し、1 バイトも送出しない。
    """
    try:
        config = resolve_params(_query_params(request))
    except ParameterError as e:
        return _error_response(e)
    except Exception as e:
        logger.exception("Unexpected error resolving stream parameters")
        return PlainTextResponse(str(e), status_code=500)

    logger.info(
        "Streaming %d frames x %d bytes at %d fps (seed=%d) to %s",
        config.frame_count,
        config.frame_size,
        config.fps,
        config.seed,
        request.client.host if request.client else "unknown",
    )
    try:
        emitter = PacedEmitter(config)
    except FrameBufferError as e:
        return _error_response(e)
    return FrameStreamResponse(emitter)


def main() -> None:
    """HOST / PORT / LOG_LEVEL 環境変数でサーバーを起動する."""
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", str(DEFAULT_PORT)))
    log_level = os.environ.get("LOG_LEVEL", "info").lower()
    if log_level not in LOG_LEVELS:
        logger.warning("Unknown LOG_LEVEL %r, falling back to info", log_level)
        log_level = "info"
    uvicorn.run(app, host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    main()
