from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np

from stemsplit.chunking import Chunk
from stemsplit.typ import NpStemData

EPSILON = 1e-8


@dataclass(frozen=True)
class NormalizationStats:
    mean: float
    std: float


def compute_stats(samples: np.ndarray) -> NormalizationStats:
    # 所有声道一起算, 与训练时的全张量归一化一致
    n = samples.size
    if n == 0:
        return NormalizationStats(mean=0.0, std=1.0)
    mean = float(np.mean(samples, dtype=np.float64))
    std = float(np.std(samples, dtype=np.float64, ddof=1)) if n > 1 else 0.0
    return NormalizationStats(mean=mean, std=max(std, EPSILON))


def normalize(chunk: Chunk) -> tuple[Chunk, NormalizationStats]:
    """
    只用有效样本统计, 补零部分保持为零.
    """
    stats = compute_stats(chunk.valid)
    samples = np.zeros_like(chunk.samples)
    samples[:, : chunk.length] = (chunk.valid - stats.mean) / stats.std
    return replace(chunk, samples=samples.astype(np.float32)), stats


def denormalize(stem_outputs: NpStemData, stats: NormalizationStats) -> NpStemData:
    return (stem_outputs * stats.std + stats.mean).astype(np.float32)
