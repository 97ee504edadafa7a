"""リクエストパラメータ → StreamConfig の解決.

認識するキーは `PARAMETERS` テーブルで宣言する。
キーを追加する場合はテーブルに 1 行足すだけでよい。
"""

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from urllib.parse import parse_qs

from fake_video_stream.config import StreamConfig

logger = logging.getLogger(__name__)

INT64_MIN = -(2**63)
INT64_MAX = 2**63 - 1

# 符号 + ASCII 数字のみ (空白・アンダースコア・全角数字は不可)
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class ParameterError(ValueError):
    """パラメータのパース/検証エラー.

    Attributes:
        key: 問題のあるパラメータ名
        raw: 受け取った生の値
    """

    def __init__(self, key: str, raw: str, message: str):
        super().__init__(message)
        self.key = key
        self.raw = raw


@dataclass(frozen=True)
class Parameter:
    """認識するクエリパラメータ 1 件の定義."""

    key: str
    field: str
    validate: Callable[[int], bool] | None = None
    requirement: str = ""


def _positive(value: int) -> bool:
    return value > 0


PARAMETERS: tuple[Parameter, ...] = (
    Parameter("seed", "seed"),
    Parameter("duration", "duration_ms", _positive, "must be > 0"),
    Parameter("fps", "fps", _positive, "must be > 0"),
    Parameter("bitrate", "bitrate", _positive, "must be > 0"),
)


def parse_int(key: str, raw: str) -> int:
    """符号付き 64bit 整数としてパースする.

    Raises:
        ParameterError: 整数として解釈できない、または範囲外の場合
    """
    if not _INTEGER_RE.fullmatch(raw):
        raise ParameterError(key, raw, f"failed to parse {key}: invalid integer {raw!r}")
    value = int(raw)
    if not INT64_MIN <= value <= INT64_MAX:
        raise ParameterError(key, raw, f"failed to parse {key}: value out of range {raw!r}")
    return value


def _first(values: Sequence[str] | str) -> str | None:
    if isinstance(values, str):
        return values
    return values[0] if values else None


def resolve_params(params: Mapping[str, Sequence[str] | str]) -> StreamConfig:
    """パラメータのマッピングから StreamConfig を解決する.

    同じキーに複数の値がある場合は最初の値だけを使う。
    未知のキーは無視する。

    Args:
        params: パラメータ名 → 値 (または値のリスト)

    Returns:
        検証済みの StreamConfig

    Raises:
        ParameterError: 最初に検証に失敗したキー
    """
    overrides: dict[str, int] = {}
    for param in PARAMETERS:
        if param.key not in params:
            continue
        raw = _first(params[param.key])
        if raw is None:
            continue

        value = parse_int(param.key, raw)
        if param.validate is not None and not param.validate(value):
            raise ParameterError(
                param.key,
                raw,
                f"invalid {param.key}: {raw!r} ({param.requirement})",
            )
        overrides[param.field] = value

    config = StreamConfig(**overrides)
    logger.debug("Resolved stream config: %s", config)
    return config


def resolve_query(query: str) -> StreamConfig:
    """URL クエリ文字列から StreamConfig を解決する (空の値も保持)."""
    return resolve_params(parse_qs(query, keep_blank_values=True))
