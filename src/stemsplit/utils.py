from __future__ import annotations

import logging
from typing import Any

import numpy as np
import torch
from numpy.typing import NDArray

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s: %(message)s"


def setup_logging(level: int | str = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # numba / matplotlib 之类的依赖在 DEBUG 下太吵
    for name in ("numba", "matplotlib", "PIL"):
        logging.getLogger(name).setLevel(logging.WARNING)


def ndarray2tensor(array: NDArray) -> torch.Tensor:
    return torch.from_numpy(np.ascontiguousarray(array, dtype=np.float32))


def tensor2ndarray(tensor: torch.Tensor) -> Any:
    return tensor.detach().cpu().contiguous().numpy()


def seconds2samples(seconds: float, sample_rate: int) -> int:
    return int(round(seconds * sample_rate))


def samples2seconds(samples: int | float, sample_rate: int) -> float:
    return samples / sample_rate


def layout_for(channels: int) -> str | int:
    if channels == 1:
        return "mono"
    if channels == 2:
        return "stereo"
    return channels
