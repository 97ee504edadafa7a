"""シード付き擬似乱数フレームソース."""

import random

_UINT64_MASK = (1 << 64) - 1


class FrameSource:
    """シードから決定的なバイト列を生成する.

    同じシード・同じ fill() 呼び出し列なら常に同じバイト列になる。
    リクエストごとに生成し、プロセス全体で共有しない。

    Usage:
        source = FrameSource(seed=42)
        buffer = bytearray(1024)
        source.fill(buffer)
    """

    def __init__(self, seed: int = 0):
        self._seed = seed
        # random.Random は負のシードを絶対値で扱うため、
        # 2 の補数の unsigned 64bit に変換して 1 と -1 を区別する
        self._random = random.Random(seed & _UINT64_MASK)

    @property
    def seed(self) -> int:
        return self._seed

    def fill(self, buffer: bytearray) -> None:
        """バッファ全体を擬似乱数バイトで上書きする."""
        size = len(buffer)
        if size:
            buffer[:] = self._random.randbytes(size)
