from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from stemsplit.errors import InvalidBuffer
from stemsplit.typ import NpAudioData


@dataclass(frozen=True)
class AudioBuffer:
    """
    dim: 2
    axis: (channels, samples)

    采样值不做裁剪, 超过 ±1.0 也原样保留, 直到编码时才量化.
    """

    samples: NpAudioData
    sample_rate: int

    @classmethod
    def from_channels(
        cls, channels: Sequence[Sequence[float] | np.ndarray], sample_rate: int
    ) -> AudioBuffer:
        if len(channels) == 0:
            raise InvalidBuffer("audio buffer needs at least one channel")
        lengths = {len(ch) for ch in channels}
        if len(lengths) != 1:
            raise InvalidBuffer(f"channel lengths differ: {sorted(lengths)}")
        return cls(
            samples=np.asarray(np.stack(channels), dtype=np.float32),
            sample_rate=sample_rate,
        )

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def length(self) -> int:
        return int(self.samples.shape[-1])

    @property
    def duration(self) -> float:
        return self.length / self.sample_rate

    def validate(self) -> None:
        if self.samples.ndim != 2:
            raise InvalidBuffer(
                f"bad audio ndarray dim: {self.samples.ndim}, 2 expected"
            )
        if self.channels < 1:
            raise InvalidBuffer("audio buffer needs at least one channel")
        if not np.issubdtype(self.samples.dtype, np.floating):
            raise InvalidBuffer(f"float samples expected, got {self.samples.dtype}")
        if self.sample_rate <= 0:
            raise InvalidBuffer(f"bad sample rate: {self.sample_rate!r}")

    def with_samples(self, samples: NpAudioData) -> AudioBuffer:
        return AudioBuffer(samples=samples, sample_rate=self.sample_rate)

    def to_channels(self, channels: int) -> AudioBuffer:
        """
        单声道复制成多声道, 多声道取前 N 个, 目标为单声道时取平均.
        """
        if channels == self.channels:
            return self
        if channels == 1:
            samples = self.samples.mean(axis=0, keepdims=True)
        elif self.channels == 1:
            samples = np.repeat(self.samples, channels, axis=0)
        elif self.channels > channels:
            samples = self.samples[:channels]
        else:
            raise InvalidBuffer(
                f"cannot upmix {self.channels} channels to {channels}"
            )
        return self.with_samples(np.ascontiguousarray(samples, dtype=np.float32))
