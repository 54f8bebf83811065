from __future__ import annotations

from fractions import Fraction
from logging import getLogger

import av
import numpy as np

from stemsplit.buffer import AudioBuffer
from stemsplit.errors import InvalidRate
from stemsplit.typ import NpAudioData
from stemsplit.utils import layout_for

# 按块送入 swresample, 与解码出来的帧一样是流式的
FEED_BLOCK = 1 << 16

logger = getLogger(__name__)


def expected_length(length: int, source_rate: int, target_rate: int) -> int:
    return int(round(length * target_rate / source_rate))


def resample(buffer: AudioBuffer, target_rate: int) -> AudioBuffer:
    """
    带限重采样 (libswresample), 声道数不变.
    采样率相同时原样返回同一个对象.
    """
    if target_rate <= 0:
        raise InvalidRate(f"target sample rate must be positive, got {target_rate!r}")
    if buffer.sample_rate <= 0:
        raise InvalidRate(
            f"source sample rate must be positive, got {buffer.sample_rate!r}"
        )
    if buffer.sample_rate == target_rate:
        return buffer

    layout = layout_for(buffer.channels)
    resampler = av.AudioResampler("fltp", layout=layout, rate=target_rate)
    samples = np.ascontiguousarray(buffer.samples, dtype=np.float32)
    frames_np: list[np.ndarray] = []
    for start in range(0, buffer.length, FEED_BLOCK):
        block = np.ascontiguousarray(samples[:, start : start + FEED_BLOCK])
        raw_frame = av.AudioFrame.from_ndarray(block, format="fltp", layout=layout)
        raw_frame.sample_rate = buffer.sample_rate
        raw_frame.time_base = Fraction(1, buffer.sample_rate)
        raw_frame.pts = start
        for frame in resampler.resample(raw_frame):
            frames_np.append(frame.to_ndarray())
    for frame in resampler.resample(None):
        frames_np.append(frame.to_ndarray())

    target_length = expected_length(buffer.length, buffer.sample_rate, target_rate)
    if frames_np:
        out: NpAudioData = np.concatenate(frames_np, axis=1).astype(np.float32)
    else:
        out = np.zeros((buffer.channels, 0), dtype=np.float32)

    # swresample 的延迟补偿可能多出或少几个样本
    if out.shape[1] > target_length:
        out = out[:, :target_length]
    elif out.shape[1] < target_length:
        out = np.pad(out, ((0, 0), (0, target_length - out.shape[1])))

    logger.info(
        f"resampled {buffer.sample_rate} -> {target_rate}: "
        f"{buffer.length} -> {target_length} samples"
    )
    return AudioBuffer(samples=np.ascontiguousarray(out), sample_rate=target_rate)
