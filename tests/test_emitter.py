"""PacedEmitter / Ticker のテスト.

transport は write コルーチンのモックで置き換え、
ペーシング・キャンセル・失敗時の終了理由を確認する。
"""

import asyncio
import threading

import pytest

from fake_video_stream import emitter as emitter_module
from fake_video_stream.config import StreamConfig
from fake_video_stream.emitter import FrameBufferError, PacedEmitter, StreamOutcome, Ticker
from fake_video_stream.frame_source import FrameSource


class _Recorder:
    """write コルーチンの代わり: フレームと書き込み時刻を記録する."""

    def __init__(self, on_write=None):
        self.frames: list[bytes] = []
        self.times: list[float] = []
        self._on_write = on_write

    async def __call__(self, frame: bytes) -> None:
        self.frames.append(frame)
        self.times.append(asyncio.get_running_loop().time())
        if self._on_write:
            self._on_write(len(self.frames))


class _CountingSource(FrameSource):
    def __init__(self, seed: int = 0, fail_at: int | None = None):
        super().__init__(seed)
        self.fills = 0
        self._fail_at = fail_at

    def fill(self, buffer: bytearray) -> None:
        if self._fail_at is not None and self.fills == self._fail_at:
            raise RuntimeError("source exhausted")
        self.fills += 1
        super().fill(buffer)


# ============================================================
# フレーム構成
# ============================================================


class TestFrames:
    @pytest.mark.asyncio
    async def test_emits_frame_count_frames_of_frame_size(self):
        config = StreamConfig(duration_ms=20, fps=500, bitrate=400_000)
        recorder = _Recorder()
        outcome = await PacedEmitter(config).run(recorder)

        assert outcome is StreamOutcome.COMPLETED
        assert len(recorder.frames) == config.frame_count == 10
        assert all(len(f) == config.frame_size == 100 for f in recorder.frames)

    @pytest.mark.asyncio
    async def test_zero_frame_count(self):
        recorder = _Recorder()
        outcome = await PacedEmitter(StreamConfig(duration_ms=10, fps=30)).run(recorder)
        assert outcome is StreamOutcome.COMPLETED
        assert recorder.frames == []

    @pytest.mark.asyncio
    async def test_zero_size_frames(self):
        config = StreamConfig(duration_ms=20, fps=1000, bitrate=10)
        recorder = _Recorder()
        outcome = await PacedEmitter(config).run(recorder)
        assert outcome is StreamOutcome.COMPLETED
        assert recorder.frames == [b""] * 20

    @pytest.mark.asyncio
    async def test_deterministic_output(self):
        config = StreamConfig(seed=99, duration_ms=10, fps=1000, bitrate=80_000)
        first, second = _Recorder(), _Recorder()
        await PacedEmitter(config).run(first)
        await PacedEmitter(config).run(second)
        assert first.frames == second.frames
        # 再利用バッファを上書きしても送出済みフレームは変わらない
        assert first.frames[0] != first.frames[1]

    @pytest.mark.asyncio
    async def test_output_matches_frame_source(self):
        config = StreamConfig(seed=5, duration_ms=5, fps=1000, bitrate=8_000)
        recorder = _Recorder()
        await PacedEmitter(config).run(recorder)

        source = FrameSource(5)
        expected = []
        for _ in range(config.frame_count):
            buffer = bytearray(config.frame_size)
            source.fill(buffer)
            expected.append(bytes(buffer))
        assert recorder.frames == expected


# ============================================================
# ペーシング
# ============================================================


class TestPacing:
    @pytest.mark.asyncio
    async def test_frames_are_spaced_by_interval(self):
        config = StreamConfig(duration_ms=300, fps=20, bitrate=16_000)
        recorder = _Recorder()
        await PacedEmitter(config).run(recorder)

        assert len(recorder.times) == 6
        gaps = [b - a for a, b in zip(recorder.times, recorder.times[1:])]
        for gap in gaps:
            assert 0.04 <= gap < 0.1

    @pytest.mark.asyncio
    async def test_ticker_drops_missed_ticks(self):
        loop = asyncio.get_running_loop()
        start = loop.time()
        ticker = Ticker(0.05)

        await asyncio.sleep(0.16)
        before = loop.time()
        await ticker.wait()
        # 取りこぼした tick は即時に 1 回だけ発火する
        assert loop.time() - before < 0.01

        await ticker.wait()
        elapsed = loop.time() - start
        assert 0.19 <= elapsed < 0.3


# ============================================================
# キャンセル
# ============================================================


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_after_k_frames_stops_writes(self):
        config = StreamConfig(duration_ms=1000, fps=100, bitrate=80_000)
        cancelled = asyncio.Event()
        source = _CountingSource()

        def on_write(count: int) -> None:
            if count == 3:
                cancelled.set()

        recorder = _Recorder(on_write)
        outcome = await PacedEmitter(config, source).run(recorder, cancelled)

        assert outcome is StreamOutcome.CANCELLED
        assert len(recorder.frames) == 3
        assert source.fills == 3

    @pytest.mark.asyncio
    async def test_cancel_interrupts_pacing_wait(self):
        """1 fps でも tick を待たずにキャンセルで抜ける."""
        loop = asyncio.get_running_loop()
        config = StreamConfig(duration_ms=5000, fps=1, bitrate=800)
        cancelled = asyncio.Event()
        loop.call_later(0.05, cancelled.set)

        recorder = _Recorder()
        start = loop.time()
        outcome = await PacedEmitter(config).run(recorder, cancelled)

        assert outcome is StreamOutcome.CANCELLED
        assert loop.time() - start < 0.5
        assert len(recorder.frames) == 1

    @pytest.mark.asyncio
    async def test_already_cancelled_still_writes_first_frame(self):
        """フレームは待ちの前に書き込まれ、その後キャンセルが勝つ."""
        cancelled = asyncio.Event()
        cancelled.set()
        recorder = _Recorder()
        outcome = await PacedEmitter(StreamConfig()).run(recorder, cancelled)
        assert outcome is StreamOutcome.CANCELLED
        assert len(recorder.frames) == 1


# ============================================================
# 送出途中の失敗
# ============================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_write_failure_ends_stream_silently(self):
        config = StreamConfig(duration_ms=100, fps=100, bitrate=8_000)
        attempts = 0

        async def write(frame: bytes) -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 3:
                raise ConnectionResetError("peer reset")

        outcome = await PacedEmitter(config).run(write)
        assert outcome is StreamOutcome.WRITE_FAILED
        assert attempts == 3

    @pytest.mark.asyncio
    async def test_source_failure_ends_stream_silently(self):
        config = StreamConfig(duration_ms=100, fps=100, bitrate=8_000)
        source = _CountingSource(fail_at=2)
        recorder = _Recorder()

        outcome = await PacedEmitter(config, source).run(recorder)
        assert outcome is StreamOutcome.SOURCE_FAILED
        assert len(recorder.frames) == 2

    @pytest.mark.asyncio
    async def test_non_os_write_error_ends_stream_silently(self):
        """ミドルウェア経由の send が OSError 以外を投げても黙って終了する."""
        config = StreamConfig(duration_ms=100, fps=100, bitrate=8_000)

        async def write(frame: bytes) -> None:
            raise RuntimeError("stream closed by middleware")

        outcome = await PacedEmitter(config).run(write)
        assert outcome is StreamOutcome.WRITE_FAILED


# ============================================================
# 大きなフレーム
# ============================================================


class TestLargeFrames:
    def test_unallocatable_frame_raises_before_streaming(self):
        """確保できないバッファは run() 前 (応答ヘッダ送出前) に失敗する."""
        config = StreamConfig(fps=1, bitrate=2**63 - 1)
        with pytest.raises(FrameBufferError, match="cannot allocate frame"):
            PacedEmitter(config)

    @pytest.mark.asyncio
    async def test_large_fill_runs_off_event_loop(self, monkeypatch):
        monkeypatch.setattr(emitter_module, "OFFLOAD_FILL_BYTES", 10)
        loop_thread = threading.get_ident()
        fill_threads: list[int] = []

        class _ThreadRecordingSource(FrameSource):
            def fill(self, buffer: bytearray) -> None:
                fill_threads.append(threading.get_ident())
                super().fill(buffer)

        config = StreamConfig(seed=4, duration_ms=3, fps=1000, bitrate=80_000)
        recorder = _Recorder()
        outcome = await PacedEmitter(config, _ThreadRecordingSource(4)).run(recorder)

        assert outcome is StreamOutcome.COMPLETED
        assert len(fill_threads) == 3
        assert loop_thread not in fill_threads

        # スレッドで fill しても出力は同じシードのソースと一致する
        expected_source = FrameSource(4)
        expected = []
        for _ in range(3):
            buffer = bytearray(10)
            expected_source.fill(buffer)
            expected.append(bytes(buffer))
        assert recorder.frames == expected
