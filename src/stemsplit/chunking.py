from __future__ import annotations

import math
from collections.abc import Iterator
from dataclasses import dataclass
from logging import getLogger

import numpy as np

from stemsplit.buffer import AudioBuffer
from stemsplit.errors import InvalidChunking
from stemsplit.typ import NpAudioData

logger = getLogger(__name__)


@dataclass(frozen=True)
class Chunk:
    index: int
    offset: int
    # 有效样本数, 末块可能小于 chunk_len
    length: int
    chunk_len: int
    overlap: int
    samples: NpAudioData  # 已补零到 chunk_len

    @property
    def pad(self) -> int:
        return self.chunk_len - self.length

    @property
    def valid(self) -> NpAudioData:
        return self.samples[:, : self.length]


class Segmentation:
    """
    惰性, 有限, 可重复迭代的分块序列, 按 offset 升序.
    每次 ``iter()`` 都从头切片, 不缓存已生成的块.
    """

    def __init__(self, buffer: AudioBuffer, chunk_len: int, overlap_len: int) -> None:
        if chunk_len <= 0:
            raise InvalidChunking(f"chunk_len must be positive, got {chunk_len}")
        if not 0 <= overlap_len < chunk_len:
            raise InvalidChunking(
                f"overlap_len must satisfy 0 <= overlap_len < chunk_len, "
                f"got overlap_len={overlap_len}, chunk_len={chunk_len}"
            )
        if buffer.length == 0:
            raise InvalidChunking("cannot segment an empty buffer")
        self.buffer = buffer
        self.chunk_len = chunk_len
        self.overlap_len = overlap_len

    @property
    def step(self) -> int:
        return self.chunk_len - self.overlap_len

    @property
    def total_length(self) -> int:
        return self.buffer.length

    def __len__(self) -> int:
        rest = max(0, self.total_length - self.chunk_len)
        return 1 + math.ceil(rest / self.step)

    @property
    def offsets(self) -> list[int]:
        return [idx * self.step for idx in range(len(self))]

    def __iter__(self) -> Iterator[Chunk]:
        samples = self.buffer.samples
        for idx, offset in enumerate(self.offsets):
            piece = samples[:, offset : offset + self.chunk_len]
            length = piece.shape[1]
            if length < self.chunk_len:
                piece = np.pad(piece, ((0, 0), (0, self.chunk_len - length)))
            yield Chunk(
                index=idx,
                offset=offset,
                length=length,
                chunk_len=self.chunk_len,
                overlap=self.overlap_len,
                samples=np.ascontiguousarray(piece, dtype=np.float32),
            )


def segment(buffer: AudioBuffer, chunk_len: int, overlap_len: int) -> Segmentation:
    seg = Segmentation(buffer, chunk_len, overlap_len)
    logger.info(
        f"segmenting {buffer.length} samples: chunk_len={chunk_len}, "
        f"overlap_len={overlap_len}, chunks={len(seg)}"
    )
    return seg
