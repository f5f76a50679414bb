"""Execution bridge: spawn an invocation, stream its output, cancel its tree."""

from __future__ import annotations

import codecs
import logging as py_logging
import queue
import subprocess
import threading
from collections.abc import Callable, Iterator
from contextlib import suppress
from dataclasses import dataclass
from typing import IO

from toolbridge.bridge.command import Invocation
from toolbridge.errors import ExitCode, ToolBridgeError
from toolbridge.models import ShellEnvironment
from toolbridge.process import CREATE_NO_WINDOW, IS_WINDOWS, process_group_kwargs, terminate_process_tree
from toolbridge.security import command_for_log

logger = py_logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"
_READ_SIZE = 4096
_READER_JOIN_SECONDS = 5.0
_QUEUE_POLL_SECONDS = 0.1
DEFAULT_CANCEL_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class OutputChunk:
    stream: str
    text: str


@dataclass(frozen=True)
class _StreamClosed:
    stream: str


class BridgeExecution:
    """One running child process; iterate for output, ``wait()`` for the exit code."""

    def __init__(
        self,
        invocation: Invocation,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        windows: bool = IS_WINDOWS,
        stdin: int | IO[bytes] | None = subprocess.DEVNULL,
        cancel_timeout_seconds: float = DEFAULT_CANCEL_TIMEOUT_SECONDS,
    ) -> None:
        self.invocation = invocation
        self._popen = popen
        self._runner = runner
        self._windows = windows
        self._stdin = stdin
        self._cancel_timeout_seconds = cancel_timeout_seconds
        self._queue: queue.Queue[OutputChunk | _StreamClosed] = queue.Queue()
        self._readers: list[threading.Thread] = []
        self._open_streams = 0
        self._streams_lock = threading.Lock()
        self._process: subprocess.Popen | None = None
        self._cancelled = threading.Event()
        self._cancel_lock = threading.Lock()

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.poll() if self._process is not None else None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> BridgeExecution:
        if self._process is not None:
            raise ToolBridgeError(
                "Execution already started.",
                code=ExitCode.VALIDATION_ERROR,
                hint="Create a new execution for each run.",
            )
        argv = self.invocation.argv
        logger.info("Starting %s execution: %s", self.invocation.environment.value, command_for_log(argv))
        try:
            self._process = self._popen(
                argv,
                stdin=self._stdin,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.invocation.cwd,
                env=dict(self.invocation.env) if self.invocation.env is not None else None,
                **process_group_kwargs(windows=self._windows),
            )
        except FileNotFoundError as exc:
            raise self._spawn_error(exc, missing=True) from exc
        except PermissionError as exc:
            raise ToolBridgeError(
                f"Permission denied starting '{self.invocation.program}'.",
                code=ExitCode.PERMISSION_DENIED,
                hint=str(exc) or "Check the file permissions of the selected binary.",
            ) from exc
        except OSError as exc:
            raise self._spawn_error(exc, missing=False) from exc

        for name, pipe in ((STDOUT, self._process.stdout), (STDERR, self._process.stderr)):
            if pipe is None:
                continue
            reader = threading.Thread(
                target=self._pump,
                args=(name, pipe),
                name=f"toolbridge-{name}-{self._process.pid}",
                daemon=True,
            )
            reader.start()
            self._readers.append(reader)
            self._open_streams += 1
        return self

    def _spawn_error(self, exc: OSError, *, missing: bool) -> ToolBridgeError:
        environment = self.invocation.environment
        if environment == ShellEnvironment.WSL:
            return ToolBridgeError(
                "The WSL launcher could not be started.",
                code=ExitCode.SPAWN_FAILURE,
                hint="Install WSL and ensure wsl.exe is available in PATH.",
            )
        if missing:
            return ToolBridgeError(
                f"Binary '{self.invocation.program}' was not found.",
                code=ExitCode.NOT_FOUND,
                hint="Refresh the installation list and select another binary.",
            )
        return ToolBridgeError(
            f"Failed to start '{self.invocation.program}'.",
            code=ExitCode.SPAWN_FAILURE,
            hint=str(exc) or "Inspect logs and retry.",
        )

    def _pump(self, name: str, pipe: IO[bytes]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        read = getattr(pipe, "read1", pipe.read)
        try:
            while True:
                data = read(_READ_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._queue.put(OutputChunk(stream=name, text=text))
            tail = decoder.decode(b"", final=True)
            if tail:
                self._queue.put(OutputChunk(stream=name, text=tail))
        except (OSError, ValueError) as exc:
            logger.debug("Stopped reading %s: %s", name, exc)
        finally:
            with suppress(OSError):
                pipe.close()
            self._queue.put(_StreamClosed(stream=name))

    def stream(self) -> Iterator[OutputChunk]:
        """Yield output chunks as they are produced until both streams close."""
        if self._process is None:
            self.start()
        while self._open_streams:
            try:
                item = self._queue.get(timeout=_QUEUE_POLL_SECONDS)
            except queue.Empty:
                continue
            if isinstance(item, _StreamClosed):
                with self._streams_lock:
                    self._open_streams -= 1
                continue
            yield item

    def __iter__(self) -> Iterator[OutputChunk]:
        return self.stream()

    def _started(self) -> subprocess.Popen:
        if self._process is None:
            self.start()
        if self._process is None:
            raise ToolBridgeError("Execution did not start.", code=ExitCode.SPAWN_FAILURE)
        return self._process

    def wait(self, timeout: float | None = None) -> int:
        process = self._started()
        returncode = process.wait(timeout=timeout)
        for reader in self._readers:
            reader.join(timeout=_READER_JOIN_SECONDS)
        logger.info("Execution finished pid=%s exit=%s", process.pid, returncode)
        return returncode

    def cancel(self) -> None:
        """Terminate the local process tree and, for bridged runs, the remote process."""
        with self._cancel_lock:
            if self._cancelled.is_set() or self._process is None:
                return
            self._cancelled.set()
        logger.info("Cancelling execution pid=%s", self._process.pid)
        terminate_process_tree(self._process, windows=self._windows, runner=self._runner)
        if not self.invocation.cancel_argv:
            return
        kwargs: dict[str, object] = {"creationflags": CREATE_NO_WINDOW} if self._windows else {}
        try:
            result = self._runner(
                list(self.invocation.cancel_argv),
                capture_output=True,
                check=False,
                timeout=self._cancel_timeout_seconds,
                **kwargs,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Failed to stop bridged process: %s", exc)
            return
        if result.returncode != 0:
            logger.warning("Bridged process cleanup exited with %s", result.returncode)

    def __enter__(self) -> BridgeExecution:
        if self._process is None:
            self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self._process is not None and self._process.poll() is None:
            self.cancel()
