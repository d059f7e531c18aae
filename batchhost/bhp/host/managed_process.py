from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Mapping, Optional, Sequence

import psutil


def kill_process_tree(pid: int, *, timeout: float = 1.0) -> None:
    """Kill ``pid`` and every descendant it has spawned."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    try:
        children = parent.children(recursive=True)
    except psutil.Error:
        children = []

    for proc in [*children, parent]:
        try:
            proc.kill()
        except psutil.Error:
            pass

    psutil.wait_procs([*children, parent], timeout=timeout)


@dataclass
class ManagedProcess:
    argv: Sequence[str]
    cwd: Path
    env: Optional[Mapping[str, str]] = None

    process: Optional[subprocess.Popen] = field(init=False, default=None)
    start_time: Optional[float] = field(init=False, default=None)
    exit_code: Optional[int] = field(init=False, default=None)
    termination_mode: Optional[str] = field(init=False, default=None)

    @property
    def pid(self) -> Optional[int]:
        return None if self.process is None else self.process.pid

    @property
    def stdin(self) -> Optional[IO[str]]:
        return None if self.process is None else self.process.stdin

    @property
    def stdout(self) -> Optional[IO[str]]:
        return None if self.process is None else self.process.stdout

    @property
    def stderr(self) -> Optional[IO[str]]:
        return None if self.process is None else self.process.stderr

    def start(self) -> None:
        """
        Spawn the interpreter with line-buffered text pipes on all three streams.
        """
        if self.process is not None:
            raise RuntimeError("Process already started")

        env = dict(os.environ if self.env is None else self.env)
        self.process = subprocess.Popen(
            list(self.argv),
            cwd=self.cwd,
            env=env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            bufsize=1,
            start_new_session=True,
        )
        self.start_time = time.time()

    def is_alive(self) -> bool:
        return self.process is not None and self.poll_exit() is None

    def terminate(self, *, timeout: float = 1.0) -> bool:
        """
        Attempt graceful termination of the interpreter. Returns True if it exited.
        """
        if self.process is None or self.poll_exit() is not None:
            return True

        self.termination_mode = "terminate"
        try:
            self.process.terminate()
        except ProcessLookupError:
            pass
        if not self._wait_for_exit(timeout=timeout):
            # Process refused to exit, escalate to a kill.
            self.kill()
            return False
        return True

    def kill(self) -> None:
        """
        Forcefully kill the interpreter and anything it spawned.
        """
        if self.process is None:
            return

        self.termination_mode = "kill"
        kill_process_tree(self.process.pid)
        self._wait_for_exit(timeout=1.0)

    def poll_exit(self) -> Optional[int]:
        """
        Return the interpreter's exit code if it has finished.
        """
        if self.process is None:
            return None

        self.exit_code = self.process.poll()
        return self.exit_code

    def wait_for_exit(self, *, timeout: Optional[float]) -> bool:
        return self._wait_for_exit(timeout=timeout)

    def close_pipes(self) -> None:
        if self.process is None:
            return
        for stream in (self.process.stdin, self.process.stdout, self.process.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError:
                pass

    def _wait_for_exit(self, *, timeout: Optional[float]) -> bool:
        """
        Wait for the subprocess to exit. Returns True if it exited.
        """
        if self.process is None:
            return True

        try:
            self.exit_code = self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True
