import io
import json
import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from batchhost.core.config import RuntimeConfig
from batchhost.core.errors import (
    ConfigError,
    InvocationFailure,
    SetupFailure,
    StartFailure,
    format_error,
    wrap_error,
)
from batchhost.core.logging import configure_logging, get_logger, log_event, reset_logging
from batchhost.core.worker_config import WorkerConfig


def test_runtime_config_reads_prefixed_environment(monkeypatch):
    monkeypatch.setenv("BATCHHOST_SHUTDOWN_GRACE", "1.5")
    monkeypatch.setenv("BATCHHOST_SCRIPT_TIMEOUT", "12")
    monkeypatch.setenv("BATCHHOST_INSTALL_REQUIREMENTS", "true")

    config = RuntimeConfig()

    assert config.shutdown_grace == 1.5
    assert config.script_timeout == 12.0
    assert config.install_requirements is True
    assert config.invocation_timeout is None
    assert config.shell == "sh"


def test_runtime_config_rejects_non_positive_startup_timeout():
    with pytest.raises(ValidationError):
        RuntimeConfig(startup_timeout=0)


def test_module_form_requires_base_dir():
    with pytest.raises(ValidationError):
        WorkerConfig(handler_module="echo", handler_function="handle")


def test_module_and_file_are_mutually_exclusive(tmp_path):
    with pytest.raises(ValidationError):
        WorkerConfig(
            base_dir=tmp_path,
            handler_module="echo",
            handler_file=tmp_path / "echo.py",
            handler_function="handle",
        )

    with pytest.raises(ValidationError):
        WorkerConfig(base_dir=tmp_path, handler_function="handle")


def test_base_dir_must_exist(tmp_path):
    with pytest.raises(ValidationError):
        WorkerConfig(base_dir=tmp_path / "missing", handler_module="echo", handler_function="handle")


def test_build_wraps_validation_errors():
    with pytest.raises(ConfigError) as excinfo:
        WorkerConfig.build(handler_file=Path("echo.py"), handler_function="not a name")

    assert excinfo.value.code == "invalid_config"
    assert "identifier" in (excinfo.value.detail or "")


def test_bad_module_name_is_rejected(tmp_path):
    with pytest.raises(ValidationError):
        WorkerConfig(base_dir=tmp_path, handler_module="echo-handler", handler_function="handle")


def test_module_form_enables_lifecycle_scripts(tmp_path):
    config = WorkerConfig(base_dir=tmp_path, handler_module="pkg.echo", handler_function="handle")

    assert config.lifecycle_scripts_enabled
    assert config.working_dir == tmp_path
    assert config.init_script == tmp_path / "init.sh"
    assert config.cleanup_script == tmp_path / "cleanup.sh"
    assert config.handler_label == "pkg.echo:handle"


def test_file_form_disables_lifecycle_scripts_even_with_base_dir(tmp_path):
    handler = tmp_path / "echo.py"
    config = WorkerConfig(base_dir=tmp_path, handler_file=handler, handler_function="handle")

    assert not config.lifecycle_scripts_enabled


def test_file_form_working_dir_is_handler_parent(tmp_path):
    handler = tmp_path / "sub" / "echo.py"
    config = WorkerConfig(handler_file=handler, handler_function="handle")

    assert config.working_dir == handler.parent
    assert config.init_script is None


def test_worker_config_is_frozen(tmp_path):
    config = WorkerConfig(handler_file=tmp_path / "echo.py", handler_function="handle")
    with pytest.raises(ValidationError):
        config.max_batch_size = 3


def test_failure_phases():
    assert StartFailure(code="x", message="m").phase == "setup"
    assert isinstance(StartFailure(code="x", message="m"), SetupFailure)
    assert InvocationFailure(code="x", message="m").phase == "invocation"


def test_format_error_includes_code_and_detail():
    error = InvocationFailure(code="handler_error", message="Handler raised", detail="boom")

    assert format_error(error) == "[handler_error] Handler raised (boom)"
    assert format_error(ValueError("bad")) == "ValueError: bad"


def test_wrap_error_keeps_own_errors():
    error = ConfigError(code="invalid_config", message="nope")
    assert wrap_error(error, code="other", message="other") is error

    wrapped = wrap_error(KeyError("k"), code="unexpected", message="Unexpected failure")
    assert wrapped.code == "unexpected"
    assert wrapped.detail == "'k'"


def test_log_event_emits_sorted_json(caplog):
    logger = get_logger("batchhost.test")
    with caplog.at_level(logging.INFO, logger="batchhost.test"):
        log_event(logger, "worker_state", slot=1, state="RUNNING")

    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {"event": "worker_state", "slot": 1, "state": "RUNNING"}


def test_relative_paths_are_made_absolute(tmp_path, monkeypatch):
    (tmp_path / "handler").mkdir()
    monkeypatch.chdir(tmp_path)

    config = WorkerConfig(base_dir=Path("handler"), handler_module="echo", handler_function="handle")
    file_config = WorkerConfig(handler_file=Path("sub/echo.py"), handler_function="handle")

    assert config.base_dir == tmp_path / "handler"
    assert config.init_script == tmp_path / "handler" / "init.sh"
    assert file_config.working_dir == tmp_path / "sub"


def test_working_dir_without_location_is_config_error():
    config = WorkerConfig.model_construct(handler_function="handle", base_dir=None, handler_file=None)

    with pytest.raises(ConfigError) as excinfo:
        config.working_dir

    assert excinfo.value.code == "invalid_config"


def test_configure_logging_writes_json_lines():
    stream = io.StringIO()
    configure_logging(stream=stream)
    try:
        log_event(get_logger("batchhost.job"), "job_started", stages=1)
        get_logger("batchhost.handler", slot=1).info("%s", "hello from handler")
    finally:
        reset_logging()

    first, second = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert first == {"event": "job_started", "stages": 1, "logger": "batchhost.job", "level": "info"}
    assert second["event"] == "output"
    assert second["message"] == "hello from handler"
    assert second["logger"] == "batchhost.handler.slot1"


def test_output_level_filters_handler_output():
    stream = io.StringIO()
    configure_logging(stream=stream, output_level="warning")
    try:
        get_logger("batchhost.handler", slot=0).info("%s", "chatty")
        get_logger("batchhost.scripts").warning("%s", "script complained")
        log_event(get_logger("batchhost.job"), "job_completed")
    finally:
        reset_logging()

    events = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert [event.get("message", event["event"]) for event in events] == ["script complained", "job_completed"]


def test_reset_logging_removes_installed_handlers(tmp_path):
    root = logging.getLogger("batchhost")
    before = list(root.handlers)

    configure_logging(log_dir=tmp_path / "logs")
    log_event(get_logger("batchhost.job"), "job_started")
    reset_logging()

    assert root.handlers == before
    assert "job_started" in (tmp_path / "logs" / "batchhost.log").read_text(encoding="utf-8")


def test_reset_logging_restores_output_levels():
    configure_logging(stream=io.StringIO(), output_level="error")
    reset_logging()

    assert logging.getLogger("batchhost.handler").level == logging.NOTSET
    assert logging.getLogger("batchhost").level == logging.NOTSET
