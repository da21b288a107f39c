from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol, Sequence

import numpy as np

from .chunks import Chunk
from .errors import WorkerFailure
from .gate import ConcurrencyGate, Permit
from .worker import WorkerOutcome


logger = logging.getLogger(__name__)


class BatchState(str, Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EMPTY = "empty"


TERMINAL_STATES = frozenset({BatchState.SUCCEEDED, BatchState.FAILED, BatchState.EMPTY})

_TRANSITIONS = {
    BatchState.IDLE: {BatchState.DISPATCHING, BatchState.EMPTY},
    BatchState.DISPATCHING: {BatchState.DRAINING},
    BatchState.DRAINING: {BatchState.SUCCEEDED, BatchState.FAILED},
}


class ChunkRunner(Protocol):
    def run(self, chunk: Chunk, threads: int) -> WorkerOutcome: ...


CompletionCallback = Callable[[int, Chunk, WorkerOutcome], None]


@dataclass
class BatchResult:
    state: BatchState
    outcomes: list[WorkerOutcome] = field(default_factory=list)
    max_workers: int = 1
    peak_concurrency: int = 0
    elapsed_sec: float = 0.0

    @property
    def submitted(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return self.submitted - self.succeeded

    @property
    def ok(self) -> bool:
        return self.state is BatchState.SUCCEEDED

    @property
    def failures(self) -> list[WorkerFailure]:
        return [
            WorkerFailure(o.chunk, o.returncode, o.reason) for o in self.outcomes if not o.ok
        ]

    def runtime_stats(self) -> dict[str, float | None]:
        if not self.outcomes:
            return {"mean_sec": None, "median_sec": None, "max_sec": None, "total_sec": 0.0}
        rt = np.asarray([o.runtime_sec for o in self.outcomes], dtype=float)
        return {
            "mean_sec": float(np.mean(rt)),
            "median_sec": float(np.median(rt)),
            "max_sec": float(np.max(rt)),
            "total_sec": float(np.sum(rt)),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "submitted": self.submitted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "max_workers": self.max_workers,
            "peak_concurrency": self.peak_concurrency,
            "elapsed_sec": self.elapsed_sec,
            "runtime": self.runtime_stats(),
            "failures": [
                {"chunk": f.chunk, "returncode": f.returncode, "reason": f.reason}
                for f in self.failures
            ],
        }


class BatchScheduler:
    """Dispatch every chunk through the gate, then drain and judge the batch.

    Chunks are admitted in the order given. A failed worker never cancels its
    siblings; the batch is judged only once all of them have been reaped.
    """

    def __init__(
        self,
        runner: ChunkRunner,
        gate: ConcurrencyGate,
        threads_per_worker: int,
        *,
        on_complete: CompletionCallback | None = None,
    ) -> None:
        self.runner = runner
        self.gate = gate
        self.threads_per_worker = int(threads_per_worker)
        self.on_complete = on_complete
        self._state = BatchState.IDLE
        self._lock = threading.Lock()
        self._outcomes: dict[int, WorkerOutcome] = {}

    @property
    def state(self) -> BatchState:
        return self._state

    def _transition(self, new_state: BatchState) -> None:
        allowed = _TRANSITIONS.get(self._state, set())
        if new_state not in allowed:
            raise RuntimeError(f"Invalid batch transition {self._state.value} -> {new_state.value}")
        logger.info("batch %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    def _run_task(self, idx: int, chunk: Chunk, permit: Permit) -> None:
        try:
            try:
                outcome = self.runner.run(chunk, self.threads_per_worker)
            except Exception as exc:
                outcome = WorkerOutcome(
                    chunk=chunk.name,
                    status="FAIL",
                    returncode=None,
                    reason=f"worker_exception:{exc}",
                    runtime_sec=0.0,
                )
        finally:
            self.gate.release(permit)

        if outcome.ok:
            logger.debug("chunk %s finished in %.2fs", chunk.name, outcome.runtime_sec)
        else:
            logger.warning("chunk %s failed: %s", chunk.name, outcome.reason)
        with self._lock:
            self._outcomes[idx] = outcome
            if self.on_complete is not None:
                self.on_complete(idx, chunk, outcome)

    def run(self, chunks: Sequence[Chunk]) -> BatchResult:
        if self._state is not BatchState.IDLE:
            raise RuntimeError("BatchScheduler instances run a single batch.")
        started = time.perf_counter()
        if not chunks:
            self._transition(BatchState.EMPTY)
            return BatchResult(state=self._state, max_workers=self.gate.max_slots)

        self._transition(BatchState.DISPATCHING)
        logger.info(
            "dispatching %d chunks, at most %d at once, %d threads each",
            len(chunks),
            self.gate.max_slots,
            self.threads_per_worker,
        )
        futures = []
        with ThreadPoolExecutor(
            max_workers=self.gate.max_slots, thread_name_prefix="batchclade-worker"
        ) as pool:
            for idx, chunk in enumerate(chunks):
                permit = self.gate.admit()
                try:
                    futures.append(pool.submit(self._run_task, idx, chunk, permit))
                except BaseException:
                    self.gate.release(permit)
                    raise
            self._transition(BatchState.DRAINING)
            wait(futures)
        for fut in futures:
            # surfaces errors raised by the completion callback
            fut.result()

        outcomes = [self._outcomes[i] for i in range(len(chunks))]
        failed = any(not o.ok for o in outcomes)
        self._transition(BatchState.FAILED if failed else BatchState.SUCCEEDED)
        result = BatchResult(
            state=self._state,
            outcomes=outcomes,
            max_workers=self.gate.max_slots,
            peak_concurrency=self.gate.peak,
            elapsed_sec=time.perf_counter() - started,
        )
        logger.info(
            "batch finished: %d submitted, %d succeeded, %d failed",
            result.submitted,
            result.succeeded,
            result.failed,
        )
        return result
