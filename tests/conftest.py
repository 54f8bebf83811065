from __future__ import annotations

import threading
import time
from pathlib import Path

import numpy as np
import pytest
import torch
from demucs.apply import BagOfModels
from demucs.htdemucs import HTDemucs

from stemsplit.buffer import AudioBuffer
from stemsplit.codec import encode
from stemsplit.config import ModelInfo
from stemsplit.separator.demucs import DemucsModel

SOURCES = ["drums", "bass", "other", "vocals"]


class MixNet(torch.nn.Module):
    """每个 stem 输出 输入 * 权重, 权重全为 1 时即恒等网络."""

    def __init__(self, weights: list[float] | None = None, delay: float = 0.0) -> None:
        super().__init__()
        weights = weights or [1.0] * len(SOURCES)
        self.register_buffer("weights", torch.tensor(weights).view(1, -1, 1, 1))
        self.delay = delay
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._counter_lock = threading.Lock()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        with self._counter_lock:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            return x.unsqueeze(1) * self.weights
        finally:
            with self._counter_lock:
                self.active -= 1


class BrokenNet(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        raise RuntimeError("CUDA out of memory (simulated)")


def make_model(
    net: torch.nn.Module | None = None,
    sample_rate: int = 8000,
    channels: int = 2,
    segment: float | None = None,
) -> DemucsModel:
    info = ModelInfo(
        name="mixnet",
        sources=SOURCES,
        sample_rate=sample_rate,
        channels=channels,
        segment=segment,
    )
    return DemucsModel(net or MixNet(), info, torch.device("cpu"))


def sine(
    freq: float,
    seconds: float,
    sample_rate: int,
    channels: int = 2,
    amplitude: float = 0.5,
) -> AudioBuffer:
    t = np.arange(int(round(seconds * sample_rate))) / sample_rate
    rows = [
        amplitude * np.sin(2 * np.pi * freq * (idx + 1) * t + idx)
        for idx in range(channels)
    ]
    return AudioBuffer(samples=np.stack(rows).astype(np.float32), sample_rate=sample_rate)


def write_wav(path: Path, buffer: AudioBuffer, bit_depth: int = 32) -> Path:
    return Path(encode(buffer, path, bit_depth))


@pytest.fixture
def identity_model() -> DemucsModel:
    return make_model()


@pytest.fixture(scope="module")
def tiny_bag() -> BagOfModels:
    """未训练的 HTDemucs, 训练长度 1 秒, 与 get_model 一样包在 BagOfModels 里."""
    torch.manual_seed(0)
    net = HTDemucs(sources=SOURCES, samplerate=8000, segment=1)
    return BagOfModels([net])
