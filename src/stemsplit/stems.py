from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType

import numpy as np

from stemsplit.buffer import AudioBuffer

VOCAL_STEM_NAME = "vocals"
INSTRUMENTAL_STEM_NAME = "instrumental"


class StemSet(Mapping[str, AudioBuffer]):
    """
    stem 名 -> 重建后的音频, 保持模型 sources 的顺序. 构建后只读.
    """

    def __init__(self, stems: Mapping[str, AudioBuffer]) -> None:
        self._stems: Mapping[str, AudioBuffer] = MappingProxyType(dict(stems))
        for buffer in self._stems.values():
            buffer.samples.setflags(write=False)

    def __getitem__(self, key: str) -> AudioBuffer:
        return self._stems[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._stems)

    def __len__(self) -> int:
        return len(self._stems)

    def __repr__(self) -> str:
        desc = ", ".join(
            f"{name}=({b.channels}x{b.length}@{b.sample_rate})"
            for name, b in self._stems.items()
        )
        return f"StemSet({desc})"

    @property
    def sources(self) -> list[str]:
        return list(self._stems)

    def to_two_stems(self, target: str = VOCAL_STEM_NAME) -> StemSet:
        """目标 stem + 其余所有 stem 之和 (伴奏)."""
        if target not in self._stems:
            raise ValueError(f"stem {target!r} not in {self.sources}")
        target_buffer = self._stems[target]
        rest = [b.samples for name, b in self._stems.items() if name != target]
        if rest:
            instrumental = np.sum(rest, axis=0, dtype=np.float32)
        else:
            instrumental = np.zeros_like(target_buffer.samples)
        return StemSet(
            {
                target: target_buffer,
                INSTRUMENTAL_STEM_NAME: target_buffer.with_samples(instrumental),
            }
        )
