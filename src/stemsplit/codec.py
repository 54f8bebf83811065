from __future__ import annotations

import os
import tempfile
from io import BytesIO
from logging import getLogger
from pathlib import Path

import av
import av.container
import av.error
import numpy as np

from stemsplit.buffer import AudioBuffer
from stemsplit.errors import CorruptStream, InvalidBuffer, IoError, UnsupportedFormat
from stemsplit.resample import resample
from stemsplit.typ import NpAudioData, PathLike
from stemsplit.utils import layout_for

DEFAULT_BIT_DEPTH = 16

# bit depth -> (codec, 送入编码器的 planar 采样格式)
BIT_DEPTHS: dict[int, tuple[str, str]] = {
    16: ("pcm_s16le", "s16p"),
    24: ("pcm_s24le", "s32p"),
    32: ("pcm_f32le", "fltp"),
}

logger = getLogger(__name__)


def open_input(src: PathLike | BytesIO) -> av.container.InputContainer:
    try:
        return av.open(src if isinstance(src, BytesIO) else str(src), "r")
    except av.error.InvalidDataError as e:
        raise UnsupportedFormat(f"unrecognized container: {src!r}") from e
    except OSError as e:
        raise IoError(f"cannot read {src!r}: {e}") from e
    except av.error.FFmpegError as e:
        raise UnsupportedFormat(f"cannot open {src!r}: {e}") from e


def decode(src: PathLike | BytesIO, audiotrack_idx: int = 0) -> AudioBuffer:
    """
    dim: 2
    axis: (channels, samples)

    以原始采样率和声道数解码第一条音轨.
    """
    with open_input(src) as container:
        if len(container.streams.audio) <= audiotrack_idx:
            raise UnsupportedFormat(f"no audio stream #{audiotrack_idx} in {src!r}")
        stream = container.streams.audio[audiotrack_idx]
        if stream.codec_context is None:
            raise UnsupportedFormat(f"no decoder for audio stream in {src!r}")

        # 只转成 planar float, 不改采样率和声道布局
        resampler = av.AudioResampler("fltp")
        frames_np: list[np.ndarray] = []
        sample_rate = stream.rate
        try:
            for raw_frame in container.decode(stream):
                sample_rate = raw_frame.sample_rate or sample_rate
                for frame in resampler.resample(raw_frame):
                    frames_np.append(frame.to_ndarray())
            for frame in resampler.resample(None):
                frames_np.append(frame.to_ndarray())
        except av.error.DecoderNotFoundError as e:
            raise UnsupportedFormat(f"unsupported codec in {src!r}") from e
        except (av.error.FFmpegError, ValueError) as e:
            raise CorruptStream(f"failed to decode {src!r}: {e}") from e

    if not frames_np:
        raise CorruptStream(f"no audio frames decoded from {src!r}")
    if not sample_rate:
        raise CorruptStream(f"unknown sample rate in {src!r}")

    wf_np: NpAudioData = np.concatenate(frames_np, axis=1).astype(np.float32)
    logger.info(
        f"decoded {src!r}: channels={wf_np.shape[0]}, sr={sample_rate}, "
        f"samples={wf_np.shape[1]}"
    )
    return AudioBuffer(samples=wf_np, sample_rate=int(sample_rate))


def load_audio(src: PathLike | BytesIO, sample_rate: int | None = None) -> AudioBuffer:
    buffer = decode(src)
    if sample_rate is None:
        return buffer
    return resample(buffer, sample_rate)


def quantize(data: NpAudioData, bit_depth: int) -> np.ndarray:
    if bit_depth == 16:
        return np.clip(np.round(data * 32768.0), -32768, 32767).astype(np.int16)
    if bit_depth == 24:
        q = np.clip(np.round(data * 8388608.0), -8388608, 8388607).astype(np.int32)
        # pcm_s24le 取 s32 的高 24 位
        return q << 8
    if bit_depth == 32:
        return np.ascontiguousarray(data, dtype=np.float32)
    raise InvalidBuffer(f"unsupported bit depth: {bit_depth!r}")


def _write_wav(dst: str | BytesIO, data: np.ndarray, sample_rate: int, bit_depth: int) -> None:
    codec, fmt = BIT_DEPTHS[bit_depth]
    layout = layout_for(data.shape[0])

    with av.open(dst, "w", format="wav") as container:
        stream = container.add_stream(
            codec,
            rate=sample_rate,
            layout=layout,
        )

        frame = av.AudioFrame.from_ndarray(
            np.ascontiguousarray(data), format=fmt, layout=layout
        )
        frame.sample_rate = sample_rate

        for packet in stream.encode(frame):
            container.mux(packet)

        # Flush a-v stream
        for packet in stream.encode(None):
            container.mux(packet)


def encode(
    buffer: AudioBuffer,
    dst: PathLike | BytesIO,
    bit_depth: int = DEFAULT_BIT_DEPTH,
) -> PathLike | BytesIO:
    """
    写出 WAV. 先写同目录下的临时文件, 成功后再 rename 到目标路径,
    失败时删除临时文件, 不会留下写了一半的文件.
    """
    buffer.validate()
    if bit_depth not in BIT_DEPTHS:
        raise InvalidBuffer(
            f"unsupported bit depth: {bit_depth!r}, one of {sorted(BIT_DEPTHS)} expected"
        )
    data = quantize(buffer.samples, bit_depth)

    if isinstance(dst, BytesIO):
        try:
            _write_wav(dst, data, buffer.sample_rate, bit_depth)
        except av.error.FFmpegError as e:
            raise IoError(f"failed to encode wav: {e}") from e
        return dst

    path = Path(dst)
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.stem}.", suffix=".part"
        )
        os.close(fd)
    except OSError as e:
        raise IoError(f"cannot write to {path.parent}: {e}") from e

    try:
        _write_wav(tmp_name, data, buffer.sample_rate, bit_depth)
        os.replace(tmp_name, path)
    except (OSError, av.error.FFmpegError) as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise IoError(f"failed to write {path}: {e}") from e
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.debug(
        f"wrote {path}: channels={buffer.channels}, sr={buffer.sample_rate}, "
        f"bits={bit_depth}, samples={buffer.length}"
    )
    return path
