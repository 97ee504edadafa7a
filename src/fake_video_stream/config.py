"""ストリーミング設定."""

from dataclasses import dataclass

# 6 Mb/s
DEFAULT_BITRATE = 6 * 1000 * 1000


@dataclass(frozen=True)
class StreamConfig:
    """1 リクエスト分の解決済みストリーム設定.

    Attributes:
        seed: 擬似乱数のシード (符号付き 64bit)
        duration_ms: ストリーム長 (ミリ秒)
        fps: フレームレート (frames/sec)
        bitrate: ビットレート (bits/sec)
    """

    seed: int = 0
    duration_ms: int = 2000
    fps: int = 30
    bitrate: int = DEFAULT_BITRATE

    @property
    def frame_count(self) -> int:
        """送出するフレーム数 (端数切り捨て)."""
        return self.fps * self.duration_ms // 1000

    @property
    def frame_size(self) -> int:
        """1 フレームのバイト数. ビットレートが小さいと 0 になり得る."""
        return self.bitrate // (8 * self.fps)

    @property
    def frame_interval(self) -> float:
        """フレーム間隔 (秒)."""
        return 1.0 / self.fps

    @property
    def content_length(self) -> int:
        """最後まで送出した場合のボディ長."""
        return self.frame_count * self.frame_size
