import logging

from batchhost.core.config import RuntimeConfig
from batchhost.core.script_runner import ScriptRunner


def test_missing_script_is_skipped_and_ok(tmp_path, runtime):
    outcome = ScriptRunner(tmp_path, runtime).run(tmp_path / "init.sh")

    assert not outcome.ran
    assert outcome.ok
    assert "not present" in outcome.describe()


def test_script_runs_in_base_dir(tmp_path, runtime):
    script = tmp_path / "init.sh"
    script.write_text("echo hello > marker.txt\n", encoding="utf-8")

    outcome = ScriptRunner(tmp_path, runtime).run(script)

    assert outcome.ran
    assert outcome.ok
    assert outcome.exit_code == 0
    assert (tmp_path / "marker.txt").read_text(encoding="utf-8").strip() == "hello"


def test_non_zero_exit_is_a_failure(tmp_path, runtime):
    script = tmp_path / "init.sh"
    script.write_text("echo 'setup broke' >&2\nexit 3\n", encoding="utf-8")

    outcome = ScriptRunner(tmp_path, runtime).run(script)

    assert not outcome.ok
    assert outcome.exit_code == 3
    assert outcome.stderr_tail() == "setup broke"
    assert outcome.describe() == "init.sh exited with code 3"


def test_script_deadline_kills_the_script(tmp_path):
    script = tmp_path / "init.sh"
    script.write_text("sleep 30\n", encoding="utf-8")
    runtime = RuntimeConfig(script_timeout=0.5)

    outcome = ScriptRunner(tmp_path, runtime).run(script)

    assert outcome.timed_out
    assert not outcome.ok


def test_script_output_is_forwarded_to_logger(tmp_path, runtime, caplog):
    script = tmp_path / "cleanup.sh"
    script.write_text("echo cleaning up\n", encoding="utf-8")

    with caplog.at_level(logging.INFO, logger="batchhost.scripts"):
        ScriptRunner(tmp_path, runtime).run(script)

    assert any("[cleanup.sh] cleaning up" in record.getMessage() for record in caplog.records)


def test_missing_shell_reports_failure(tmp_path):
    script = tmp_path / "init.sh"
    script.write_text("true\n", encoding="utf-8")
    runtime = RuntimeConfig(shell=str(tmp_path / "no-such-shell"))

    outcome = ScriptRunner(tmp_path, runtime).run(script)

    assert not outcome.ok
    assert outcome.exit_code == 127


def test_install_requirements_skipped_without_file(tmp_path, runtime):
    outcome = ScriptRunner(tmp_path, runtime).install_requirements("python")

    assert not outcome.ran
    assert outcome.ok
