from __future__ import annotations

from logging import getLogger
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from stemsplit.errors import ModelLoadError
from stemsplit.typ import PathLike
from stemsplit.utils import seconds2samples

DEFAULT_REPO: Path | None = None
DEFAULT_MODEL = "htdemucs"
DEFAULT_DEVICE = "auto"
PREFERRED_MODELS = ("htdemucs_6s", "htdemucs")

# 模型没有声明 segment 时用的块长, 与 htdemucs 的训练长度一致
FALLBACK_SEGMENT_SECONDS = 7.8
DEFAULT_OVERLAP_RATIO = 0.25

logger = getLogger(__name__)


class ModelInfo(BaseModel):
    name: str
    sources: list[str] = Field(
        default_factory=lambda: ["drums", "bass", "other", "vocals"]
    )
    sample_rate: int = Field(default=44100, gt=0)
    channels: int = Field(default=2, ge=1)
    # 模型能接受的最长输入 (秒), None 表示不限
    segment: float | None = Field(default=None, gt=0)
    weights: str | None = None


class ModelRegistry(BaseModel):
    models: list[ModelInfo] = Field(default_factory=list)


class SeparationConfig(BaseModel):
    model: str = DEFAULT_MODEL
    repo: Path | None = DEFAULT_REPO
    device: str = DEFAULT_DEVICE
    chunk_seconds: float | None = Field(default=None, gt=0)
    overlap_seconds: float | None = Field(default=None, ge=0)
    overlap_ratio: float = Field(default=DEFAULT_OVERLAP_RATIO, ge=0, lt=1)
    bit_depth: Literal[16, 24, 32] = 16
    stem_filename: str = "{stem}.wav"
    two_stems: bool = False
    two_stems_target: str = "vocals"
    post_process: bool = False
    workers: int = Field(default=1, ge=1)

    @field_validator("stem_filename")
    @classmethod
    def _check_stem_filename(cls, v: str) -> str:
        if "{stem}" not in v:
            raise ValueError("stem_filename must contain '{stem}'")
        if "/" in v or "\\" in v:
            raise ValueError("stem_filename must be a bare file name")
        return v

    def chunk_params(
        self, sample_rate: int, model_segment: float | None = None
    ) -> tuple[int, int]:
        """
        Returns:
            tuple[int, int]: (chunk_len, overlap_len), 单位为样本数.
        """
        chunk_seconds = self.chunk_seconds or model_segment or FALLBACK_SEGMENT_SECONDS
        chunk_len = seconds2samples(chunk_seconds, sample_rate)
        if model_segment is not None:
            # HTDemucs 拒绝长于 int(segment * samplerate) 的输入
            max_len = int(model_segment * sample_rate)
            if chunk_len > max_len:
                if self.chunk_seconds is not None:
                    logger.warning(
                        f"chunk of {chunk_seconds}s exceeds model segment "
                        f"{model_segment}s, clamped"
                    )
                chunk_len = max_len
        if self.overlap_seconds is not None:
            overlap_len = seconds2samples(self.overlap_seconds, sample_rate)
        else:
            overlap_len = int(chunk_len * self.overlap_ratio)
        return chunk_len, overlap_len


def load_config(path: PathLike) -> SeparationConfig:
    return SeparationConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))


def load_model_registry(path: PathLike) -> list[ModelInfo]:
    text = Path(path).read_text(encoding="utf-8")
    if text.lstrip().startswith("["):
        return ModelRegistry.model_validate_json(f'{{"models": {text}}}').models
    return ModelRegistry.model_validate_json(text).models


def find_model(models: list[ModelInfo], name: str) -> ModelInfo | None:
    for info in models:
        if info.name == name:
            return info
    return None


def _has_weights(info: ModelInfo, repo: Path) -> bool:
    if info.weights:
        return (repo / info.weights).is_file()
    return any((repo / f"{info.name}{ext}").is_file() for ext in (".th", ".yaml"))


def pick_model(
    models: list[ModelInfo],
    repo: Path | None,
    preferred: tuple[str, ...] = PREFERRED_MODELS,
) -> ModelInfo:
    """
    优先选择权重文件已经在 repo 里的模型, 都没有时退回最后一个偏好模型.
    """
    candidates = [info for name in preferred if (info := find_model(models, name))]
    if not candidates:
        raise ModelLoadError(f"none of {list(preferred)} found in model registry")
    if repo is not None:
        for info in candidates:
            if _has_weights(info, repo):
                logger.info(f"weights for {info.name!r} found in {repo}")
                return info
            logger.info(f"weights for {info.name!r} not found in {repo}, skipped")
    return candidates[-1]
