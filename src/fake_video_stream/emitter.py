"""一定間隔でフレームを送出するエミッタ.

StreamConfig からフレーム数・フレームサイズを算出し、
1/fps 秒ごとに 1 フレームずつ書き込む。各フレームは個別に flush され、
tick 待ちの間にクライアント切断を検知したら即座に終了する。
"""

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable

from fake_video_stream.config import StreamConfig
from fake_video_stream.frame_source import FrameSource

logger = logging.getLogger(__name__)

# これ以上のフレームはイベントループを塞がないようスレッドで fill する
OFFLOAD_FILL_BYTES = 1024 * 1024

# 1 フレームを transport に書き込んで flush する
WriteFn = Callable[[bytes], Awaitable[None]]


class FrameBufferError(RuntimeError):
    """フレームバッファを確保できない (送出開始前のエラー)."""


class StreamOutcome(enum.Enum):
    """ストリームの終了理由."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    SOURCE_FAILED = "source_failed"
    WRITE_FAILED = "write_failed"


class Ticker:
    """イベントループ時計に基づく固定周期タイマー.

    最初の tick は生成から interval 秒後。待ち手が遅れて取りこぼした
    tick はまとめて発火せず破棄し、以降も元の周期に揃える。
    """

    def __init__(self, interval: float):
        self._interval = interval
        self._loop = asyncio.get_running_loop()
        self._next = self._loop.time() + interval

    @property
    def interval(self) -> float:
        return self._interval

    async def wait(self) -> None:
        """次の tick まで待つ."""
        delay = self._next - self._loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
            self._next += self._interval
            return

        missed = int(-delay // self._interval)
        self._next += (missed + 1) * self._interval


class PacedEmitter:
    """StreamConfig + FrameSource → 一定間隔の書き込み列.

    Usage:
        emitter = PacedEmitter(config)
        outcome = await emitter.run(write, cancelled)
    """

    def __init__(self, config: StreamConfig, source: FrameSource | None = None):
        self._config = config
        self._source = source if source is not None else FrameSource(config.seed)
        # 送出開始 (200 応答) 前に確保し、失敗は FrameBufferError にする
        try:
            self._buffer = bytearray(config.frame_size)
        except (MemoryError, OverflowError) as e:
            raise FrameBufferError(
                f"cannot allocate frame of {config.frame_size} bytes"
            ) from e

    @property
    def config(self) -> StreamConfig:
        return self._config

    async def run(
        self,
        write: WriteFn,
        cancelled: asyncio.Event | None = None,
    ) -> StreamOutcome:
        """全フレームを送出する.

        各フレームで fill → write (flush) → tick 待ちの順に処理する。
        tick 待ちはキャンセルと競合し、キャンセル済みなら常にキャンセルが勝つ。

        Args:
            write: 1 フレームを transport へ書き込み flush するコルーチン関数
            cancelled: クライアント切断時にセットされるイベント

        Returns:
            終了理由. fill/write の失敗は例外にせず SOURCE_FAILED /
            WRITE_FAILED として返す (送出開始後はエラーを返せないため).
        """
        if cancelled is None:
            cancelled = asyncio.Event()

        frame_count = self._config.frame_count
        buffer = self._buffer
        offload = len(buffer) >= OFFLOAD_FILL_BYTES
        ticker = Ticker(self._config.frame_interval)

        logger.debug(
            "Stream starting: %d frames x %d bytes at %d fps (seed=%d)",
            frame_count,
            len(buffer),
            self._config.fps,
            self._config.seed,
        )

        for index in range(frame_count):
            try:
                if offload:
                    await asyncio.to_thread(self._source.fill, buffer)
                else:
                    self._source.fill(buffer)
            except Exception:
                logger.warning(
                    "Frame source failed at frame %d/%d, ending stream",
                    index,
                    frame_count,
                    exc_info=True,
                )
                return StreamOutcome.SOURCE_FAILED

            try:
                # buffer は次フレームで上書きするため、送出分はコピーを渡す
                await write(bytes(buffer))
            except Exception as e:
                # OSError 以外 (ミドルウェア経由の send など) も同じく黙って終了
                logger.debug(
                    "Write failed at frame %d/%d, ending stream: %s",
                    index,
                    frame_count,
                    e,
                )
                return StreamOutcome.WRITE_FAILED

            if await self._wait_tick(ticker, cancelled):
                logger.info(
                    "Stream cancelled by client after %d/%d frames",
                    index + 1,
                    frame_count,
                )
                return StreamOutcome.CANCELLED

        return StreamOutcome.COMPLETED

    @staticmethod
    async def _wait_tick(ticker: Ticker, cancelled: asyncio.Event) -> bool:
        """次の tick かキャンセルの早い方まで待つ. キャンセルなら True."""
        if cancelled.is_set():
            return True

        tick = asyncio.ensure_future(ticker.wait())
        cancel = asyncio.ensure_future(cancelled.wait())
        try:
            await asyncio.wait({tick, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            tick.cancel()
            cancel.cancel()
        return cancelled.is_set()
