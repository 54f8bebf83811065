from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from logging import getLogger

import numpy as np
import torch

from stemsplit.config import ModelInfo
from stemsplit.errors import InferenceError
from stemsplit.typ import NpAudioData, NpStemData
from stemsplit.utils import ndarray2tensor, tensor2ndarray

logger = getLogger(__name__)


class SeparationModel(ABC):
    """
    进程内共享的模型句柄. 设备在加载时确定, 之后不再变化;
    所有前向推理都经过同一把锁串行执行.
    """

    def __init__(self, info: ModelInfo, device: torch.device) -> None:
        self.info = info
        self._device = device
        self._lock = threading.Lock()

    @property
    def device(self) -> torch.device:
        return self._device

    @property
    def sources(self) -> list[str]:
        return list(self.info.sources)

    @property
    def sample_rate(self) -> int:
        return self.info.sample_rate

    @property
    def channels(self) -> int:
        return self.info.channels

    @abstractmethod
    def forward(self, batch: torch.Tensor) -> torch.Tensor:
        """[batch, channels, length] -> [batch, stems, channels, length], 已持有锁."""
        raise NotImplementedError

    def infer(self, tensor: torch.Tensor) -> torch.Tensor:
        """
        [channels, length] -> [stems, channels, length]
        [batch, channels, length] -> [batch, stems, channels, length]
        """
        if tensor.ndim == 2:
            batch, squeeze = tensor.unsqueeze(0), True
        elif tensor.ndim == 3:
            batch, squeeze = tensor, False
        else:
            raise InferenceError(
                f"bad input tensor dim: {tensor.ndim}, 2 or 3 expected"
            )
        if batch.shape[1] != self.channels:
            raise InferenceError(
                f"model expects {self.channels} channels, got {batch.shape[1]}"
            )

        expected = (batch.shape[0], len(self.sources), self.channels, batch.shape[-1])
        with self._lock:
            try:
                with torch.inference_mode():
                    out = self.forward(batch.to(self._device))
                out = out.detach().cpu()
            except Exception as e:
                raise InferenceError(f"forward pass failed: {e}") from e

        if tuple(out.shape) != expected:
            raise InferenceError(
                f"model output shape {tuple(out.shape)} != expected {expected}"
            )
        return out.squeeze(0) if squeeze else out

    def infer_array(self, array: NpAudioData) -> NpStemData:
        out = self.infer(ndarray2tensor(array))
        return np.asarray(tensor2ndarray(out), dtype=np.float32)
