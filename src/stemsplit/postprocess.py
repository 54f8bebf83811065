from __future__ import annotations

import math
from logging import getLogger

import numpy as np
from scipy import signal

from stemsplit.buffer import AudioBuffer
from stemsplit.stems import INSTRUMENTAL_STEM_NAME
from stemsplit.typ import NpAudioData

CLICK_THRESHOLD = 0.9
CLICK_RATIO = 3.0
NOISE_BLEND = 0.3

logger = getLogger(__name__)


def _rc(cutoff: float, sample_rate: int) -> tuple[float, float]:
    rc = 1.0 / (2.0 * math.pi * cutoff)
    dt = 1.0 / sample_rate
    return rc, dt


def high_pass(data: NpAudioData, sample_rate: int, cutoff: float) -> NpAudioData:
    """一阶 RC 高通: y[n] = a * (y[n-1] + x[n] - x[n-1])"""
    rc, dt = _rc(cutoff, sample_rate)
    alpha = rc / (rc + dt)
    return signal.lfilter([alpha, -alpha], [1.0, -alpha], data, axis=-1).astype(
        np.float32
    )


def low_pass(data: NpAudioData, sample_rate: int, cutoff: float) -> NpAudioData:
    """一阶 RC 低通: y[n] = y[n-1] + a * (x[n] - y[n-1])"""
    rc, dt = _rc(cutoff, sample_rate)
    alpha = dt / (rc + dt)
    return signal.lfilter([alpha], [1.0, alpha - 1.0], data, axis=-1).astype(
        np.float32
    )


def band_pass(
    data: NpAudioData, sample_rate: int, low_cut: float, high_cut: float
) -> NpAudioData:
    return low_pass(high_pass(data, sample_rate, low_cut), sample_rate, high_cut)


def reduce_noise(data: NpAudioData, sample_rate: int) -> NpAudioData:
    # 10ms 滑动平均, 与原信号 7:3 混合
    window = int(sample_rate * 0.01)
    length = data.shape[-1]
    if window < 2 or length < window * 2:
        return data
    csum = np.concatenate(
        [np.zeros(data.shape[:-1] + (1,)), np.cumsum(data, axis=-1, dtype=np.float64)],
        axis=-1,
    )
    smoothed = data.astype(np.float64)
    idx = np.arange(window, length - window)
    smoothed[..., idx] = (csum[..., idx + window] - csum[..., idx - window]) / (
        2 * window
    )
    return (data * (1 - NOISE_BLEND) + smoothed * NOISE_BLEND).astype(np.float32)


def remove_clicks(data: NpAudioData, sample_rate: int) -> NpAudioData:
    """
    绝对值超过阈值, 且是前后 1ms 平均幅度 3 倍以上的样本视为爆音,
    用前后平均幅度替换 (保留符号).
    按时间顺序原地修复, 已修复的样本参与后面样本的前向平均.
    """
    window = int(sample_rate * 0.001)
    length = data.shape[-1]
    if window < 1 or length <= window * 2:
        return data
    out = data.copy()
    count = 0
    for channel in out.reshape(-1, length):
        # 只有超过阈值的样本才可能是爆音, 修复不会改变其他样本是否超过阈值
        loud = np.abs(channel[window : length - window]) > CLICK_THRESHOLD
        for i in np.flatnonzero(loud) + window:
            current = abs(float(channel[i]))
            prev_avg = float(np.mean(np.abs(channel[i - window : i]), dtype=np.float64))
            next_avg = float(
                np.mean(np.abs(channel[i + 1 : i + window + 1]), dtype=np.float64)
            )
            if current > prev_avg * CLICK_RATIO or current > next_avg * CLICK_RATIO:
                channel[i] = (prev_avg + next_avg) / 2 * math.copysign(1.0, channel[i])
                count += 1
    if count:
        logger.debug(f"removed {count} clicks")
    return out


def post_process_stem(buffer: AudioBuffer, stem: str) -> AudioBuffer:
    data, sr = buffer.samples, buffer.sample_rate
    if stem in ("other", INSTRUMENTAL_STEM_NAME):
        data = reduce_noise(high_pass(data, sr, 80.0), sr)
    elif stem == "bass":
        data = low_pass(data, sr, 400.0)
    elif stem == "vocals":
        data = band_pass(data, sr, 300.0, 3400.0)
    elif stem == "guitar":
        data = band_pass(data, sr, 80.0, 8000.0)
    elif stem == "piano":
        data = band_pass(data, sr, 80.0, 15000.0)
    # drums 及未知 stem 保持宽频, 不做滤波
    data = remove_clicks(data, sr)
    return buffer.with_samples(np.ascontiguousarray(data, dtype=np.float32))
