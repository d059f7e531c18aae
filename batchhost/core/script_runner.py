from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from batchhost.bhp.host.managed_process import kill_process_tree
from batchhost.core.config import RuntimeConfig, get_runtime_config
from batchhost.core.logging import get_logger, log_event
from batchhost.core.worker_config import REQUIREMENTS_FILE

logger = get_logger("batchhost.scripts")


@dataclass(frozen=True)
class ScriptOutcome:
    script: Path
    ran: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        if not self.ran:
            return True
        return not self.timed_out and self.exit_code == 0

    def describe(self) -> str:
        if not self.ran:
            return f"{self.script.name} not present"
        if self.timed_out:
            return f"{self.script.name} timed out"
        return f"{self.script.name} exited with code {self.exit_code}"

    def stderr_tail(self, lines: int = 5) -> str | None:
        tail = [line for line in self.stderr.splitlines() if line.strip()][-lines:]
        return "\n".join(tail) or None


class ScriptRunner:
    """Run optional setup/teardown shell scripts inside a worker's base directory."""

    def __init__(self, base_dir: Path, runtime: RuntimeConfig | None = None) -> None:
        self.base_dir = base_dir
        self.runtime = runtime or get_runtime_config()

    def run(self, script: Path) -> ScriptOutcome:
        if not script.is_file():
            log_event(logger, "script_skipped", script=str(script))
            return ScriptOutcome(script=script, ran=False)

        return self._execute(script, [self.runtime.shell, str(script)])

    def install_requirements(self, python: str) -> ScriptOutcome:
        requirements = self.base_dir / REQUIREMENTS_FILE
        if not requirements.is_file():
            return ScriptOutcome(script=requirements, ran=False)

        command = [python, "-m", "pip", "install", "--quiet", "-r", str(requirements)]
        return self._execute(requirements, command)

    def _execute(self, script: Path, command: Sequence[str]) -> ScriptOutcome:
        log_event(logger, "script_started", script=str(script), cwd=str(self.base_dir))
        try:
            proc = subprocess.Popen(
                list(command),
                cwd=self.base_dir,
                shell=False,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                start_new_session=True,
            )
        except OSError as exc:
            # Shell missing or not executable; report it like a failed script.
            outcome = ScriptOutcome(script=script, ran=True, exit_code=127, stderr=str(exc))
        else:
            try:
                stdout, stderr = proc.communicate(timeout=self.runtime.script_timeout)
            except subprocess.TimeoutExpired:
                # Children of the script may keep the pipes open; kill the whole tree.
                kill_process_tree(proc.pid)
                stdout, stderr = proc.communicate()
                outcome = ScriptOutcome(
                    script=script,
                    ran=True,
                    exit_code=proc.returncode,
                    stdout=_as_text(stdout),
                    stderr=_as_text(stderr),
                    timed_out=True,
                )
            else:
                outcome = ScriptOutcome(
                    script=script,
                    ran=True,
                    exit_code=proc.returncode,
                    stdout=_as_text(stdout),
                    stderr=_as_text(stderr),
                )

        self._forward_output(script, outcome)
        log_event(
            logger,
            "script_finished",
            script=str(script),
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            ok=outcome.ok,
        )
        return outcome

    def _forward_output(self, script: Path, outcome: ScriptOutcome) -> None:
        for line in outcome.stdout.splitlines():
            logger.info("[%s] %s", script.name, line)
        for line in outcome.stderr.splitlines():
            logger.warning("[%s] %s", script.name, line)


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
