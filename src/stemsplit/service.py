from __future__ import annotations

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from logging import getLogger
from pathlib import Path

from stemsplit.config import SeparationConfig
from stemsplit.separator.abc import SeparationModel
from stemsplit.stem_separator import (
    ProgressCallback,
    SeparationJob,
    SeparationResult,
    Separator,
    Stage,
)
from stemsplit.typ import PathLike

logger = getLogger(__name__)


@dataclass
class Ticket:
    id: str
    job: SeparationJob
    future: Future[SeparationResult]
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def stage(self) -> Stage:
        return self.job.stage

    def cancel(self) -> bool:
        """还没开始的直接取消; 已在运行的在下一个块边界停下."""
        if self.future.cancel():
            return True
        if self.future.done():
            return False
        self.cancel_event.set()
        return True

    def result(self, timeout: float | None = None) -> SeparationResult:
        return self.future.result(timeout=timeout)


class SeparationService:
    """
    每个请求一个工作线程, 请求内部各阶段顺序执行.
    不同请求的解码/重采样/编码可以并行, 只有模型前向推理被模型的锁串行化.
    """

    def __init__(
        self,
        model: SeparationModel,
        config: SeparationConfig | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.config = config or SeparationConfig()
        self.separator = Separator(model, self.config)
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers or self.config.workers,
            thread_name_prefix="stemsplit",
        )
        self.tickets: dict[str, Ticket] = {}
        self.ticket_lock = threading.Lock()

    def submit(
        self,
        input_path: PathLike,
        output_dir: PathLike,
        on_progress: ProgressCallback | None = None,
    ) -> Ticket:
        job = SeparationJob(Path(input_path), Path(output_dir), on_progress)
        cancel_event = threading.Event()
        future = self.executor.submit(
            self.separator.separate,
            job.input_path,
            job.output_dir,
            cancel=cancel_event,
            job=job,
        )
        ticket = Ticket(
            id=uuid.uuid4().hex, job=job, future=future, cancel_event=cancel_event
        )
        with self.ticket_lock:
            self.tickets[ticket.id] = ticket
        logger.info(f"submitted {job.input_path} as {ticket.id}")
        return ticket

    def get(self, ticket_id: str) -> Ticket | None:
        with self.ticket_lock:
            return self.tickets.get(ticket_id)

    def cancel(self, ticket_id: str) -> bool:
        ticket = self.get(ticket_id)
        return ticket.cancel() if ticket is not None else False

    def clear_finished(self) -> int:
        with self.ticket_lock:
            done = [tid for tid, t in self.tickets.items() if t.future.done()]
            for tid in done:
                del self.tickets[tid]
        return len(done)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self) -> SeparationService:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
