from __future__ import annotations


class SeparationError(Exception):
    """
    所有分离错误的基类. ``kind`` 是稳定的错误种类名, 供调用方上报.
    """

    kind: str = "SeparationError"


class UnsupportedFormat(SeparationError):
    kind = "UnsupportedFormat"


class CorruptStream(SeparationError):
    kind = "CorruptStream"


class IoError(SeparationError, OSError):
    kind = "IoError"


class InvalidRate(SeparationError, ValueError):
    kind = "InvalidRate"


class InvalidBuffer(SeparationError, ValueError):
    kind = "InvalidBuffer"


class InvalidChunking(SeparationError, ValueError):
    kind = "InvalidChunking"


class ModelLoadError(SeparationError):
    """权重无法读取或反序列化. 进程级致命错误, 应在启动时报告."""

    kind = "ModelLoadError"


class InferenceError(SeparationError):
    """单次前向推理失败. 只影响当前请求, 共享模型仍可用."""

    kind = "InferenceError"


class SeparationCancelled(SeparationError):
    kind = "Cancelled"
