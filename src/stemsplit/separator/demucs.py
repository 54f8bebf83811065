from __future__ import annotations

import math
from logging import getLogger
from pathlib import Path

import torch
from demucs.apply import apply_model
from demucs.pretrained import get_model
from typing_extensions import override

from stemsplit.config import DEFAULT_DEVICE, DEFAULT_MODEL, DEFAULT_REPO, ModelInfo
from stemsplit.errors import ModelLoadError

from .abc import SeparationModel

logger = getLogger(__name__)


def select_device(preference: str = DEFAULT_DEVICE) -> torch.device:
    if preference == "auto":
        if torch.backends.mps.is_available():
            return torch.device("mps")
        if torch.cuda.is_available():
            return torch.device("cuda:0")
        return torch.device("cpu")
    try:
        device = torch.device(preference)
    except RuntimeError as e:
        raise ModelLoadError(f"bad device: {preference!r}") from e
    if device.type == "cuda" and not torch.cuda.is_available():
        raise ModelLoadError(f"device {preference!r} requested but CUDA is unavailable")
    if device.type == "mps" and not torch.backends.mps.is_available():
        raise ModelLoadError(f"device {preference!r} requested but MPS is unavailable")
    return device


def model_segment(net: torch.nn.Module) -> float | None:
    """
    模型能接受的最长输入 (秒).
    BagOfModels 没有 ``segment``, 用 ``max_allowed_segment``, 不含 HTDemucs 时为 inf.
    """
    segment = getattr(net, "max_allowed_segment", None)
    if segment is None or math.isinf(segment):
        segment = getattr(net, "segment", None)
    if segment is None or math.isinf(float(segment)):
        return None
    return float(segment)


def list_models(repo: Path) -> list[str]:
    """本地 repo 中的模型: 单模型为 ``<sig>.th``, 模型包为 ``<name>.yaml``."""
    if not repo.is_dir():
        return []
    names = {p.stem.split("-")[0] for p in repo.glob("*.th")}
    names.update(p.stem for p in repo.glob("*.yaml"))
    return sorted(names)


class DemucsModel(SeparationModel):
    def __init__(
        self,
        net: torch.nn.Module,
        info: ModelInfo,
        device: torch.device,
        use_apply_model: bool = False,
    ) -> None:
        super().__init__(info, device)
        self.net = net
        # demucs 的模型 (尤其是 BagOfModels) 要通过 apply_model 调用
        self._use_apply_model = use_apply_model

    def __repr__(self) -> str:
        return f"DemucsModel(name={self.info.name!r}, device={str(self.device)!r})"

    @classmethod
    def load(
        cls,
        model: str = DEFAULT_MODEL,
        repo: Path | None = DEFAULT_REPO,
        device: str = DEFAULT_DEVICE,
    ) -> DemucsModel:
        torch_device = select_device(device)
        logger.info(f"loading model {model!r} from {repo or 'remote'} on {torch_device}")
        if repo is not None and model not in list_models(repo):
            raise ModelLoadError(f"model {model!r} not found in repo {repo}")
        try:
            net = get_model(model, repo=repo)
            net.eval()
            net.to(torch_device)
        except Exception as e:
            raise ModelLoadError(f"failed to load model {model!r}: {e}") from e

        segment = model_segment(net)
        info = ModelInfo(
            name=model,
            sources=list(net.sources),
            sample_rate=int(net.samplerate),
            channels=int(net.audio_channels),
            segment=segment,
        )
        logger.info(
            f"model loaded: sources={info.sources}, sr={info.sample_rate}, "
            f"channels={info.channels}, segment={info.segment}"
        )
        return cls(net, info, torch_device, use_apply_model=True)

    @override
    def forward(self, batch: torch.Tensor) -> torch.Tensor:
        if self._use_apply_model:
            return apply_model(
                self.net, batch, shifts=0, split=False, device=self.device
            )
        return self.net(batch)
