import pytest

from batchhost.bhp.host import ProcessRegistry
from batchhost.core.config import RuntimeConfig
from batchhost.core.errors import ConfigError, JobFailed, WorkerFailure
from batchhost.core.state import WorkerState
from batchhost.core.worker_config import WorkerConfig
from batchhost.pipeline.job import Job, JobCancelled, JobStatus
from batchhost.pipeline.pipeline import Pipeline

# Fails the batch if init did not run first, or if cleanup already ran.
CHECKING_HANDLER = """
import os

def handle(input_list):
    open('batch_ran', 'w').close()
    assert os.path.exists('init_ran'), 'init has not run'
    assert not os.path.exists('cleanup_ran'), 'cleanup ran too early'
    return ['echo-%s' % i for i in input_list]
"""

INIT = "sleep 1\ntouch init_ran\n"
CLEANUP = "touch cleanup_ran\n"


def _config(base_dir, **extra):
    return WorkerConfig(base_dir=base_dir, handler_module="echo", handler_function="handle", **extra)


def _run(pipeline, runtime, registry=None):
    job = Job(pipeline, runtime=runtime, registry=registry)
    return job, job.run().join()


def test_init_runs_before_first_batch_and_cleanup_after_job(make_base_dir, runtime):
    base_dir = make_base_dir(handler=CHECKING_HANDLER, init=INIT, cleanup=CLEANUP)
    pipeline = Pipeline.from_items(["1", "2", "3"]).map_using_handler_batch(_config(base_dir), parallelism=2)

    job, outputs = _run(pipeline, runtime)

    assert outputs == ["echo-1", "echo-2", "echo-3"]
    assert job.status is JobStatus.COMPLETED
    assert (base_dir / "batch_ran").exists()
    assert (base_dir / "cleanup_ran").exists()


def test_init_failure_fails_job_without_processing(make_base_dir, runtime):
    base_dir = make_base_dir(handler=CHECKING_HANDLER, init="exit 1\n", cleanup=CLEANUP)
    pipeline = Pipeline.from_items(["1"]).map_using_handler_batch(_config(base_dir), parallelism=2)
    job = Job(pipeline, runtime=runtime)

    with pytest.raises(JobFailed) as excinfo:
        job.run().join()

    assert isinstance(excinfo.value.cause, WorkerFailure)
    assert excinfo.value.cause.phase == "setup"
    assert job.status is JobStatus.FAILED
    assert not (base_dir / "batch_ran").exists()
    assert (base_dir / "cleanup_ran").exists()


def test_cleanup_runs_when_handler_fails(make_base_dir, runtime):
    handler = """
    def handle(input_list):
        assert 1 == 2
    """
    base_dir = make_base_dir(handler=handler, cleanup=CLEANUP)
    pipeline = Pipeline.from_items(["1", "2"]).map_using_handler_batch(_config(base_dir), parallelism=2)

    with pytest.raises(JobFailed) as excinfo:
        Job(pipeline, runtime=runtime).run().join()

    assert excinfo.value.cause.phase == "invocation"
    assert "assert 1 == 2" in str(excinfo.value.cause)
    assert (base_dir / "cleanup_ran").exists()


def test_cleanup_runs_when_upstream_stage_fails(make_base_dir, runtime):
    base_dir = make_base_dir(handler=CHECKING_HANDLER, cleanup=CLEANUP)

    def fail(item):
        raise AssertionError("upstream stage failed")

    pipeline = Pipeline.from_items(["1"]).map(fail).map_using_handler_batch(_config(base_dir), parallelism=2)

    with pytest.raises(JobFailed) as excinfo:
        Job(pipeline, runtime=runtime).run().join()

    assert isinstance(excinfo.value.cause, AssertionError)
    assert not (base_dir / "batch_ran").exists()
    assert (base_dir / "cleanup_ran").exists()


def test_file_form_runs_no_scripts(make_base_dir, runtime):
    base_dir = make_base_dir(init=INIT, cleanup=CLEANUP)
    config = WorkerConfig(handler_file=base_dir / "echo.py", handler_function="handle")
    pipeline = Pipeline.from_items(["1"]).map_using_handler_batch(config, parallelism=2)

    _, outputs = _run(pipeline, runtime)

    assert outputs == ["echo-1"]
    assert not (base_dir / "init_ran").exists()
    assert not (base_dir / "cleanup_ran").exists()


def test_order_and_cardinality_are_preserved(make_base_dir, runtime):
    base_dir = make_base_dir()
    items = list(range(50))
    pipeline = (
        Pipeline.from_items(items)
        .map(str)
        .map_using_handler_batch(_config(base_dir, max_batch_size=7), parallelism=3)
    )

    job, outputs = _run(pipeline, runtime)

    assert outputs == ["echo-%s" % i for i in items]
    assert [worker.instance.batches_processed for worker in job.workers] == [3, 3, 2]


def test_no_live_processes_after_join(make_base_dir, runtime):
    registry = ProcessRegistry()
    handler = """
    def handle(input_list):
        raise RuntimeError('boom')
    """
    pipeline = Pipeline.from_items(["1"]).map_using_handler_batch(
        _config(make_base_dir(handler=handler)), parallelism=3
    )

    with pytest.raises(JobFailed):
        Job(pipeline, runtime=runtime, registry=registry).run().join()

    assert len(registry.list_all()) == 3
    assert registry.list_active() == []


def test_empty_source_still_runs_setup_and_cleanup(make_base_dir, runtime):
    base_dir = make_base_dir(init="touch init_ran\n", cleanup=CLEANUP)
    pipeline = Pipeline.from_items([]).map_using_handler_batch(_config(base_dir))

    _, outputs = _run(pipeline, runtime)

    assert outputs == []
    assert (base_dir / "init_ran").exists()
    assert (base_dir / "cleanup_ran").exists()


def test_map_only_pipeline():
    job = Job(Pipeline.from_items([1, 2]).map(lambda x: x * 10))

    assert job.join() == [10, 20]


def test_parallelism_must_be_positive(tmp_path):
    config = WorkerConfig(handler_file=tmp_path / "echo.py", handler_function="handle")

    with pytest.raises(ConfigError):
        Pipeline.from_items([]).map_using_handler_batch(config, parallelism=0)


def test_builders_do_not_mutate_prefix():
    base = Pipeline.from_items([1])
    extended = base.map(str)

    assert base.stages == ()
    assert len(extended.stages) == 1


def test_cancel_during_running_batch_tears_down(make_base_dir, slow_handler, wait_for_file):
    base_dir = make_base_dir(handler=slow_handler, cleanup=CLEANUP)
    registry = ProcessRegistry()
    pipeline = Pipeline.from_items(["1", "2"]).map_using_handler_batch(_config(base_dir), parallelism=2)
    job = Job(pipeline, runtime=RuntimeConfig(shutdown_grace=0.5), registry=registry).run()
    wait_for_file(base_dir / "batch_started")

    job.cancel()

    with pytest.raises(JobFailed) as excinfo:
        job.join(timeout=20)
    assert isinstance(excinfo.value.cause, JobCancelled)
    assert job.status is JobStatus.FAILED
    assert (base_dir / "cleanup_ran").exists()
    assert registry.list_active() == []


def test_cancel_before_run_starts_nothing(make_base_dir, runtime):
    base_dir = make_base_dir(init="touch init_ran\n", cleanup=CLEANUP)
    pipeline = Pipeline.from_items(["1"]).map_using_handler_batch(_config(base_dir))
    job = Job(pipeline, runtime=runtime)

    job.cancel()

    with pytest.raises(JobFailed):
        job.run().join(timeout=20)
    assert job.status is JobStatus.FAILED
    assert [worker.state for worker in job.workers] == [WorkerState.TERMINATED]
    assert not (base_dir / "init_ran").exists()
    assert not (base_dir / "cleanup_ran").exists()


def test_cancel_after_completion_keeps_result():
    job = Job(Pipeline.from_items([1, 2]).map(lambda x: x * 10))
    assert job.join() == [10, 20]

    job.cancel()

    assert job.status is JobStatus.COMPLETED
    assert job.failure is None
    assert job.join() == [10, 20]
