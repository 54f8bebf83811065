from __future__ import annotations

from logging import getLogger
from pathlib import Path

import av
import av.stream
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from stemsplit.buffer import AudioBuffer
from stemsplit.codec import open_input
from stemsplit.typ import PathLike
from stemsplit.utils import samples2seconds

DEFAULT_BPM = 120.0
BPM_RANGE = (60.0, 200.0)
COVER_FILENAME = "cover.jpg"

logger = getLogger(__name__)


def _envelope(buffer: AudioBuffer, hop: int) -> np.ndarray:
    mono = np.mean(buffer.samples, axis=0)
    n_frames = mono.shape[0] // hop
    return np.abs(mono[: n_frames * hop]).reshape(n_frames, hop).mean(axis=1)


def find_peaks(env: np.ndarray, radius: int, rel_threshold: float = 0.3) -> np.ndarray:
    """
    高于最大值 30% 且严格大于左侧 radius 个点, 不小于右侧 radius 个点的局部极大.
    """
    if radius < 1 or env.shape[0] <= radius * 2:
        return np.zeros(0, dtype=np.int64)
    peak = float(env.max())
    if peak <= 0:
        return np.zeros(0, dtype=np.int64)
    windows = sliding_window_view(env, radius).max(axis=-1)
    idx = np.arange(radius, env.shape[0] - radius)
    left = windows[idx - radius]
    right = windows[idx + 1]
    current = env[idx]
    mask = (current > peak * rel_threshold) & (current > left) & (current >= right)
    return idx[mask]


def detect_bpm(buffer: AudioBuffer) -> float:
    """
    粗略的 BPM 估计: 10ms 帧包络 -> 100ms 滑动平均 -> 峰值间隔.
    峰太少或音频太短时返回 120.
    """
    hop = max(1, int(buffer.sample_rate * 0.01))
    env = _envelope(buffer, hop)
    smooth_frames = 10
    if env.shape[0] < smooth_frames * 2:
        logger.info("audio too short for bpm detection, using default")
        return DEFAULT_BPM
    smoothed = np.convolve(env, np.ones(smooth_frames) / smooth_frames, mode="valid")

    peaks = find_peaks(smoothed, max(1, smooth_frames // 4))
    if peaks.shape[0] < 2:
        logger.info(f"only {peaks.shape[0]} envelope peaks found, using default bpm")
        return DEFAULT_BPM
    interval = samples2seconds(float(np.mean(np.diff(peaks))) * hop, buffer.sample_rate)
    bpm = float(np.clip(60.0 / interval, *BPM_RANGE))
    logger.info(f"bpm={bpm:.2f} from {peaks.shape[0]} peaks, interval={interval:.3f}s")
    return bpm


def extract_cover(src: PathLike, output_dir: PathLike) -> Path | None:
    """把内嵌的 JPEG 封面写到 ``output_dir/cover.jpg``, 没有封面时返回 None."""
    with open_input(src) as container:
        for stream in container.streams.video:
            if not stream.disposition & av.stream.Disposition.attached_pic:
                continue
            if stream.codec_context.name != "mjpeg":
                logger.info(f"cover art is {stream.codec_context.name!r}, not jpeg")
                return None
            for packet in container.demux(stream):
                if packet.size == 0:
                    continue
                Path(output_dir).mkdir(parents=True, exist_ok=True)
                path = Path(output_dir) / COVER_FILENAME
                path.write_bytes(bytes(packet))
                logger.info(f"cover art written to {path}")
                return path
    return None
