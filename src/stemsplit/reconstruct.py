from __future__ import annotations

from collections.abc import Iterable, Sequence
from logging import getLogger

import numpy as np

from stemsplit.buffer import AudioBuffer
from stemsplit.errors import InvalidBuffer
from stemsplit.stems import StemSet
from stemsplit.typ import NpStemData

logger = getLogger(__name__)


def fade_in(overlap_len: int) -> np.ndarray:
    """
    (i+1)/(overlap+1), 不含端点 0 和 1.
    与对应的 fade_out 逐点相加恰好为 1.
    """
    return (np.arange(1, overlap_len + 1, dtype=np.float64) / (overlap_len + 1)).astype(
        np.float32
    )


def fade_out(overlap_len: int) -> np.ndarray:
    return (1.0 - fade_in(overlap_len)).astype(np.float32)


def chunk_window(
    valid_len: int, overlap_len: int, first: bool, last: bool
) -> np.ndarray:
    window = np.ones(valid_len, dtype=np.float32)
    if overlap_len == 0:
        return window
    if not first:
        n = min(overlap_len, valid_len)
        window[:n] = fade_in(overlap_len)[:n]
    if not last:
        n = min(overlap_len, valid_len)
        window[valid_len - n :] *= fade_out(overlap_len)[overlap_len - n :]
    return window


class Reconstructor:
    """
    增量式 overlap-add: 每来一块就累加进输出缓冲, 块本身可以马上丢弃.
    """

    def __init__(
        self,
        sources: Sequence[str],
        channels: int,
        total_length: int,
        overlap_len: int,
        sample_rate: int,
    ) -> None:
        self.sources = list(sources)
        self.channels = channels
        self.total_length = total_length
        self.overlap_len = overlap_len
        self.sample_rate = sample_rate
        self._acc = np.zeros(
            (len(self.sources), channels, total_length), dtype=np.float32
        )
        self._weight = np.zeros(total_length, dtype=np.float64)
        self._count = 0

    def add(
        self, offset: int, stems: NpStemData, first: bool, last: bool
    ) -> None:
        if stems.ndim != 3 or stems.shape[:2] != (len(self.sources), self.channels):
            raise InvalidBuffer(
                f"chunk output shape {stems.shape} does not match "
                f"[{len(self.sources)}, {self.channels}, *]"
            )
        if not 0 <= offset < self.total_length:
            raise InvalidBuffer(
                f"chunk offset {offset} outside [0, {self.total_length})"
            )
        # 丢掉末块的补零
        valid_len = min(stems.shape[-1], self.total_length - offset)
        window = chunk_window(valid_len, self.overlap_len, first, last)
        end = offset + valid_len
        self._acc[..., offset:end] += stems[..., :valid_len] * window
        self._weight[offset:end] += window
        self._count += 1
        logger.debug(
            f"chunk #{self._count} accumulated at [{offset}, {end}), first={first}, last={last}"
        )

    def finish(self) -> StemSet:
        if np.any(self._weight == 0):
            missing = int(np.count_nonzero(self._weight == 0))
            raise InvalidBuffer(f"{missing} samples not covered by any chunk")
        out = self._acc / self._weight.astype(np.float32)
        return StemSet(
            {
                name: AudioBuffer(
                    samples=np.ascontiguousarray(out[idx]),
                    sample_rate=self.sample_rate,
                )
                for idx, name in enumerate(self.sources)
            }
        )


def reconstruct(
    outputs: Iterable[NpStemData],
    offsets: Sequence[int],
    overlap_len: int,
    total_length: int,
    sources: Sequence[str],
    sample_rate: int,
) -> StemSet:
    """
    outputs 的每一项是 [stems, channels, chunk_len], 与 offsets 一一对应且按升序排列.
    """
    rec: Reconstructor | None = None
    n = len(offsets)
    consumed = 0
    for idx, (offset, stems) in enumerate(zip(offsets, outputs)):
        if rec is None:
            rec = Reconstructor(
                sources, stems.shape[1], total_length, overlap_len, sample_rate
            )
        rec.add(offset, stems, first=idx == 0, last=idx == n - 1)
        consumed += 1
    if rec is None or consumed != n:
        raise InvalidBuffer(f"expected {n} chunk outputs, got {consumed}")
    return rec.finish()
