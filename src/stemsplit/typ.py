from __future__ import annotations

from pathlib import Path
from typing import Annotated, Union

import numpy as np
from numpy.typing import NDArray
from typing_extensions import TypeAlias

NpAudioData: TypeAlias = Annotated[NDArray[np.float32], "Shape[channels, samples]"]
NpStemData: TypeAlias = Annotated[
    NDArray[np.float32], "Shape[stems, channels, samples]"
]

PathLike: TypeAlias = Union[str, Path]
