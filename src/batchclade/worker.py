from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Iterable

from .chunks import Chunk
from .errors import ConfigurationError, MissingBinary
from .summary import Summarizer, write_alignment_summary


logger = logging.getLogger(__name__)

NEXTCLADE_DOCKER_IMAGE = "nextstrain/nextclade:3.9.1"
TOOL_NAME = "nextclade"

ENV_BIN = "BATCHCLADE_NEXTCLADE_BIN"
ENV_BACKEND = "BATCHCLADE_NEXTCLADE_BACKEND"
ENV_SIF = "BATCHCLADE_NEXTCLADE_SIF"


@dataclass(frozen=True)
class ToolBackend:
    kind: str  # local | docker | singularity
    target: str  # executable path or container image reference

    def describe(self) -> str:
        return f"{self.kind}:{self.target}"


def _local_executable(candidate: str) -> str | None:
    path = Path(candidate)
    if path.is_file() and os.access(path, os.X_OK):
        return str(path.resolve())
    if os.sep not in candidate:
        return shutil.which(candidate)
    return None


def resolve_backend(binary: str | None = None, backend: str = "auto") -> ToolBackend:
    """Pick how the analysis tool is executed.

    An explicit binary always wins. Under ``auto`` containers are preferred over
    whatever happens to be on PATH.
    """
    explicit_bin = binary or os.environ.get(ENV_BIN)
    explicit_sif = os.environ.get(ENV_SIF)
    mode = str(backend or "auto").strip().lower()
    if mode == "auto":
        mode = os.environ.get(ENV_BACKEND, "auto").strip().lower() or "auto"

    if mode == "auto":
        if explicit_bin:
            found = _local_executable(explicit_bin)
            if found is None:
                raise MissingBinary(f"Analysis tool binary not found: {explicit_bin}")
            return ToolBackend("local", found)
        if shutil.which("docker"):
            return ToolBackend("docker", NEXTCLADE_DOCKER_IMAGE)
        if shutil.which("singularity"):
            return ToolBackend("singularity", explicit_sif or f"docker://{NEXTCLADE_DOCKER_IMAGE}")
        found = shutil.which(TOOL_NAME)
        if found:
            return ToolBackend("local", found)
        raise MissingBinary(
            f"No runnable backend found for {TOOL_NAME} (docker/singularity/local unavailable)."
        )

    if mode == "local":
        candidate = explicit_bin or TOOL_NAME
        found = _local_executable(candidate)
        if found is None:
            raise MissingBinary(
                f"Analysis tool binary not found: {candidate}. Set {ENV_BIN} or pass --binary."
            )
        return ToolBackend("local", found)

    if mode == "docker":
        if shutil.which("docker"):
            return ToolBackend("docker", NEXTCLADE_DOCKER_IMAGE)
        raise MissingBinary("docker requested but docker executable was not found.")

    if mode == "singularity":
        if shutil.which("singularity"):
            return ToolBackend("singularity", explicit_sif or f"docker://{NEXTCLADE_DOCKER_IMAGE}")
        raise MissingBinary("singularity requested but singularity executable was not found.")

    raise ConfigurationError(f"Unsupported backend: {backend}")


def container_name(chunk: Chunk) -> str:
    safe = re.sub(r"[^A-Za-z0-9_.-]", "_", chunk.name)
    return f"batchclade-{os.getpid()}-{safe}"


def _kill_container(name: str) -> None:
    try:
        subprocess.run(
            ["docker", "kill", name],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as exc:
        logger.warning("could not kill container %s: %s", name, exc)


def tail_lines(path: Path, n: int = 40) -> str:
    if not path.exists():
        return ""
    lines = path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
    return "\n".join(lines[-n:])


@dataclass
class WorkerOutcome:
    chunk: str
    status: str  # OK | FAIL
    returncode: int | None
    reason: str
    runtime_sec: float
    stderr_tail: str = ""
    command: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "OK"

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": self.chunk,
            "status": self.status,
            "returncode": self.returncode,
            "reason": self.reason,
            "runtime_sec": self.runtime_sec,
            "stderr_tail": self.stderr_tail,
            "command": self.command,
        }


@dataclass
class RunningWorker:
    chunk: Chunk
    process: subprocess.Popen
    log_handle: IO[str]
    started: float
    command: list[str]


class WorkerProcessAdapter:
    """Runs the analysis tool once per chunk.

    A non-zero exit is reported in the returned ``WorkerOutcome``; it is never
    raised, so sibling workers keep running.
    """

    def __init__(
        self,
        backend: ToolBackend,
        dataset_dir: str | Path,
        *,
        timeout_sec: int | None = None,
        summarizer: Summarizer | None = write_alignment_summary,
        bind_dirs: Iterable[str | Path] = (),
    ) -> None:
        self.backend = backend
        self.dataset_dir = Path(dataset_dir).resolve()
        self.timeout_sec = timeout_sec
        self.summarizer = summarizer
        self.bind_dirs = [Path(d).resolve() for d in bind_dirs]

    def tool_args(self, chunk: Chunk, threads: int) -> list[str]:
        return [
            "run",
            "--input-dataset",
            str(self.dataset_dir),
            "--jobs",
            str(int(threads)),
            "--in-order",
            "--verbosity",
            "error",
            "--output-tsv",
            str(chunk.table_path.resolve()),
            "--output-fasta",
            str(chunk.aligned_path.resolve()),
            "--output-translations",
            str(chunk.scratch_dir.resolve() / f"{chunk.name}.{{cds}}.translation.fasta"),
            str(chunk.input_path.resolve()),
        ]

    def _mounts(self, chunk: Chunk) -> list[str]:
        dirs = [self.dataset_dir, chunk.input_path.resolve().parent, *self.bind_dirs]
        dirs += [
            chunk.table_path.resolve().parent,
            chunk.aligned_path.resolve().parent,
            chunk.scratch_dir.resolve(),
        ]
        out: list[str] = []
        for d in dirs:
            if str(d) not in out:
                out.append(str(d))
        return out

    def command(self, chunk: Chunk, threads: int) -> list[str]:
        args = self.tool_args(chunk, threads)
        kind, target = self.backend.kind, self.backend.target
        if kind == "local":
            return [target] + args
        if kind == "docker":
            cmd = ["docker", "run", "--rm", "--init", "--name", container_name(chunk)]
            for d in self._mounts(chunk):
                cmd += ["-v", f"{d}:{d}"]
            return cmd + [target, TOOL_NAME] + args
        if kind == "singularity":
            return ["singularity", "exec", "--bind", ",".join(self._mounts(chunk)), target, TOOL_NAME] + args
        raise ValueError(f"Unsupported backend: {self.backend}")

    def _prepare(self, chunk: Chunk) -> None:
        for path in (chunk.table_path, chunk.aligned_path, chunk.summary_path):
            path.parent.mkdir(parents=True, exist_ok=True)
            # stale outputs from an earlier run must not pass as this run's results
            if path.exists():
                path.unlink()
        chunk.scratch_dir.mkdir(parents=True, exist_ok=True)
        chunk.log_path.parent.mkdir(parents=True, exist_ok=True)

    def start(self, chunk: Chunk, threads: int) -> RunningWorker:
        self._prepare(chunk)
        cmd = self.command(chunk, threads)
        log_handle = chunk.log_path.open("w", encoding="utf-8")
        started = time.perf_counter()
        try:
            process = subprocess.Popen(
                cmd,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                cwd=str(chunk.scratch_dir),
                start_new_session=True,
            )
        except BaseException:
            log_handle.close()
            raise
        logger.debug("started %s (pid %d): %s", chunk.name, process.pid, " ".join(cmd))
        return RunningWorker(
            chunk=chunk, process=process, log_handle=log_handle, started=started, command=cmd
        )

    def _terminate(self, running: RunningWorker) -> None:
        """Stop the tool and everything it started, including a container."""
        if self.backend.kind == "docker":
            # killing the docker client leaves the container running
            _kill_container(container_name(running.chunk))
        try:
            os.killpg(running.process.pid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug("process group of %s already exited", running.chunk.name)
        running.process.wait()

    def wait(self, running: RunningWorker) -> WorkerOutcome:
        chunk = running.chunk
        command = " ".join(running.command)
        try:
            try:
                returncode = running.process.wait(timeout=self.timeout_sec)
            except subprocess.TimeoutExpired:
                self._terminate(running)
                return WorkerOutcome(
                    chunk=chunk.name,
                    status="FAIL",
                    returncode=None,
                    reason=f"timeout:{self.timeout_sec}s",
                    runtime_sec=time.perf_counter() - running.started,
                    stderr_tail=tail_lines(chunk.log_path),
                    command=command,
                )
        finally:
            running.log_handle.close()

        runtime = time.perf_counter() - running.started
        if returncode != 0:
            return WorkerOutcome(
                chunk=chunk.name,
                status="FAIL",
                returncode=returncode,
                reason=f"tool_failed:rc={returncode}",
                runtime_sec=runtime,
                stderr_tail=tail_lines(chunk.log_path),
                command=command,
            )

        if self.summarizer is not None:
            try:
                self.summarizer(chunk.aligned_path, chunk.summary_path)
            except Exception as exc:
                return WorkerOutcome(
                    chunk=chunk.name,
                    status="FAIL",
                    returncode=returncode,
                    reason=f"summary_failed:{exc}",
                    runtime_sec=time.perf_counter() - running.started,
                    stderr_tail=tail_lines(chunk.log_path),
                    command=command,
                )

        return WorkerOutcome(
            chunk=chunk.name,
            status="OK",
            returncode=returncode,
            reason="ok",
            runtime_sec=time.perf_counter() - running.started,
            command=command,
        )

    def run(self, chunk: Chunk, threads: int) -> WorkerOutcome:
        try:
            running = self.start(chunk, threads)
        except OSError as exc:
            return WorkerOutcome(
                chunk=chunk.name,
                status="FAIL",
                returncode=None,
                reason=f"launch_failed:{exc}",
                runtime_sec=0.0,
            )
        return self.wait(running)
