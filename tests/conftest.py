from __future__ import annotations

import textwrap
import time
from pathlib import Path

import pytest

from batchhost.core.config import RuntimeConfig

ECHO_HANDLER = """
def handle(input_list):
    return ['echo-%s' % i for i in input_list]
"""

FAILING_HANDLER = """
def handle(input_list):
    assert 1 == 2
    return input_list
"""


def write_base_dir(
    root: Path,
    *,
    handler: str = ECHO_HANDLER,
    module: str = "echo",
    init: str | None = None,
    cleanup: str | None = None,
) -> Path:
    base_dir = root / "handler"
    base_dir.mkdir()
    (base_dir / f"{module}.py").write_text(textwrap.dedent(handler), encoding="utf-8")
    if init is not None:
        (base_dir / "init.sh").write_text(textwrap.dedent(init), encoding="utf-8")
    if cleanup is not None:
        (base_dir / "cleanup.sh").write_text(textwrap.dedent(cleanup), encoding="utf-8")
    return base_dir


@pytest.fixture
def runtime() -> RuntimeConfig:
    return RuntimeConfig(
        startup_timeout=30.0,
        invocation_timeout=30.0,
        shutdown_grace=5.0,
        script_timeout=30.0,
    )


@pytest.fixture
def make_base_dir(tmp_path: Path):
    def _make(**kwargs) -> Path:
        return write_base_dir(tmp_path, **kwargs)

    return _make

# Marks the batch as started, then blocks far longer than any test waits.
SLOW_HANDLER = """
import time

def handle(input_list):
    open('batch_started', 'w').close()
    time.sleep(30)
    return input_list
"""


@pytest.fixture
def wait_for_file():
    def _wait(path: Path, timeout: float = 20.0) -> None:
        deadline = time.monotonic() + timeout
        while not path.exists():
            if time.monotonic() > deadline:
                raise AssertionError(f"{path.name} did not appear within {timeout}s")
            time.sleep(0.05)

    return _wait


@pytest.fixture
def slow_handler() -> str:
    return SLOW_HANDLER
