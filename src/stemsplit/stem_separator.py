from __future__ import annotations

import os
import shutil
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from logging import getLogger
from pathlib import Path
from typing import Callable

from stemsplit.buffer import AudioBuffer
from stemsplit.chunking import segment
from stemsplit.codec import decode, encode
from stemsplit.config import SeparationConfig
from stemsplit.errors import IoError, SeparationCancelled
from stemsplit.normalize import denormalize, normalize
from stemsplit.postprocess import post_process_stem
from stemsplit.reconstruct import Reconstructor
from stemsplit.resample import resample
from stemsplit.separator.abc import SeparationModel
from stemsplit.separator.demucs import DemucsModel
from stemsplit.stems import StemSet
from stemsplit.typ import PathLike

logger = getLogger(__name__)


class Stage(Enum):
    IDLE = "idle"
    DECODING = "decoding"
    RESAMPLING = "resampling"
    SEGMENTING = "segmenting"
    INFERRING = "inferring"
    RECONSTRUCTING = "reconstructing"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED)


ProgressCallback = Callable[[Stage, float], None]


@dataclass
class SeparationJob:
    """单次分离请求的状态. 任一阶段失败都进入 FAILED, 不自动重试."""

    input_path: Path
    output_dir: Path
    on_progress: ProgressCallback | None = None
    stage: Stage = Stage.IDLE
    failed_stage: Stage | None = None
    error: BaseException | None = None
    history: list[Stage] = field(default_factory=lambda: [Stage.IDLE])

    def advance(self, stage: Stage, fraction: float = 0.0) -> None:
        if self.stage.terminal:
            raise RuntimeError(f"job already {self.stage.value}, cannot enter {stage.value}")
        if stage is not self.stage:
            logger.info(f"{self.input_path.name}: {self.stage.value} -> {stage.value}")
            self.stage = stage
            self.history.append(stage)
        self.report(fraction)

    def report(self, fraction: float) -> None:
        if self.on_progress is not None:
            self.on_progress(self.stage, fraction)

    def fail(self, error: BaseException) -> None:
        self.failed_stage = self.stage
        self.error = error
        self.stage = Stage.FAILED
        self.history.append(Stage.FAILED)
        kind = getattr(error, "kind", type(error).__name__)
        logger.error(
            f"{self.input_path.name}: failed during {self.failed_stage.value}: "
            f"[{kind}] {error}"
        )
        self.report(0.0)


@dataclass(frozen=True)
class SeparationResult:
    input_path: Path
    stems: dict[str, Path]
    sample_rate: int
    length: int
    elapsed: float


class Separator:
    def __init__(
        self, model: SeparationModel, config: SeparationConfig | None = None
    ) -> None:
        self.model = model
        self.config = config or SeparationConfig()

    def separate(
        self,
        input_path: PathLike,
        output_dir: PathLike,
        *,
        cancel: threading.Event | None = None,
        on_progress: ProgressCallback | None = None,
        job: SeparationJob | None = None,
    ) -> SeparationResult:
        job = job or SeparationJob(Path(input_path), Path(output_dir), on_progress)
        started = time.perf_counter()
        try:
            job.advance(Stage.DECODING)
            track = decode(job.input_path)
            stems = self.separate_buffer(track, job=job, cancel=cancel)
            job.advance(Stage.ENCODING)
            paths = self.write_stems(stems, job.output_dir, job)
        except BaseException as e:
            job.fail(e)
            raise

        job.advance(Stage.DONE, 1.0)
        first = next(iter(stems.values()))
        result = SeparationResult(
            input_path=job.input_path,
            stems=paths,
            sample_rate=first.sample_rate,
            length=first.length,
            elapsed=time.perf_counter() - started,
        )
        logger.info(
            f"separate done: {job.input_path.name}, stems={list(paths)}, "
            f"elapsed={result.elapsed:.2f}s"
        )
        return result

    def separate_buffer(
        self,
        track: AudioBuffer,
        job: SeparationJob | None = None,
        cancel: threading.Event | None = None,
    ) -> StemSet:
        job = job or SeparationJob(Path("<buffer>"), Path("."))
        model = self.model

        job.advance(Stage.RESAMPLING)
        track = resample(track, model.sample_rate).to_channels(model.channels)

        job.advance(Stage.SEGMENTING)
        chunk_len, overlap_len = self.config.chunk_params(
            model.sample_rate, model.info.segment
        )
        # 输入比一块还短时按整段处理, 末块补零
        chunks = segment(track, chunk_len, overlap_len)
        n = len(chunks)

        job.advance(Stage.INFERRING)
        rec = Reconstructor(
            model.sources, model.channels, track.length, overlap_len, model.sample_rate
        )
        for chunk in chunks:
            # 只在块边界检查取消, 不打断正在进行的推理
            if cancel is not None and cancel.is_set():
                raise SeparationCancelled(
                    f"cancelled after {chunk.index}/{n} chunks"
                )
            normalized, stats = normalize(chunk)
            out = denormalize(model.infer_array(normalized.samples), stats)
            rec.add(chunk.offset, out, first=chunk.index == 0, last=chunk.index == n - 1)
            logger.debug(
                f"chunk {chunk.index + 1}/{n} done: offset={chunk.offset}, pad={chunk.pad}"
            )
            job.report((chunk.index + 1) / n)
        if cancel is not None and cancel.is_set():
            raise SeparationCancelled(f"cancelled after {n}/{n} chunks")

        job.advance(Stage.RECONSTRUCTING)
        stems = rec.finish()
        # 先合成伴奏再后处理, 伴奏按 other 的方式滤波
        if self.config.two_stems:
            stems = stems.to_two_stems(self.config.two_stems_target)
        if self.config.post_process:
            stems = StemSet(
                {name: post_process_stem(buf, name) for name, buf in stems.items()}
            )
        return stems

    def write_stems(
        self, stems: StemSet, output_dir: Path, job: SeparationJob | None = None
    ) -> dict[str, Path]:
        """
        先全部写进输出目录下的临时目录, 全部成功后再逐个移动到位.
        任一 stem 失败则删掉临时目录, 输出目录里不会留下半成品,
        被覆盖的旧文件也会恢复.
        """
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=".stemsplit-", dir=output_dir))
        except OSError as e:
            raise IoError(f"cannot use output directory {output_dir}: {e}") from e

        try:
            staged: dict[str, Path] = {}
            for idx, (name, buffer) in enumerate(stems.items()):
                filename = self.config.stem_filename.format(stem=name)
                staged[name] = Path(
                    encode(buffer, staging / filename, self.config.bit_depth)
                )
                if job is not None:
                    job.report((idx + 1) / len(stems))
            paths: dict[str, Path] = {}
            # 上一次运行留下的同名文件先挪进临时目录, 失败时原样放回
            previous: dict[Path, Path] = {}
            for name, tmp in staged.items():
                dst = output_dir / tmp.name
                try:
                    if dst.exists():
                        backup = staging / "previous" / tmp.name
                        backup.parent.mkdir(exist_ok=True)
                        os.replace(dst, backup)
                        previous[dst] = backup
                    os.replace(tmp, dst)
                except OSError as e:
                    self._rollback(list(paths.values()), previous)
                    raise IoError(f"failed to move {tmp.name} into {output_dir}: {e}") from e
                paths[name] = dst
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        return paths

    @staticmethod
    def _rollback(moved: list[Path], previous: dict[Path, Path]) -> None:
        for path in moved:
            path.unlink(missing_ok=True)
        for dst, backup in previous.items():
            try:
                os.replace(backup, dst)
            except OSError as e:
                logger.error(f"cannot restore {dst} from {backup}: {e}")


_model: SeparationModel | None = None
_model_lock = threading.Lock()


def init_model(config: SeparationConfig | None = None) -> SeparationModel:
    """
    进程启动时调用. 加载失败直接抛出 ModelLoadError, 不拖到第一次请求.
    """
    global _model
    config = config or SeparationConfig()
    with _model_lock:
        if _model is None:
            _model = DemucsModel.load(config.model, config.repo, config.device)
        return _model


def set_model(model: SeparationModel | None) -> None:
    global _model
    with _model_lock:
        _model = model


def get_model() -> SeparationModel:
    if _model is None:
        raise RuntimeError("model is not loaded, call init_model() at startup")
    return _model


def separate(
    input_path: PathLike,
    output_dir: PathLike,
    config: SeparationConfig | None = None,
    *,
    cancel: threading.Event | None = None,
    on_progress: ProgressCallback | None = None,
) -> SeparationResult:
    return Separator(get_model(), config).separate(
        input_path, output_dir, cancel=cancel, on_progress=on_progress
    )
