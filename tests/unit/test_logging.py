import pytest

from imagepipe.core.logging import (
    LogContext,
    add_job_context,
    attempt_var,
    job_id_var,
    stage_var,
    with_logging,
)


def test_log_context_sets_and_restores_vars():
    with LogContext(job_id="job-1", stage="upload"):
        assert job_id_var.get() == "job-1"
        assert stage_var.get() == "upload"

    assert job_id_var.get() is None
    assert stage_var.get() is None


def test_nested_context_only_overrides_given_values():
    with LogContext(job_id="job-1", stage="worker", attempt=2):
        with LogContext(stage="analysis"):
            assert (job_id_var.get(), stage_var.get(), attempt_var.get()) == ("job-1", "analysis", 2)
        assert stage_var.get() == "worker"

    assert attempt_var.get() is None


def test_job_context_does_not_override_explicit_fields():
    with LogContext(job_id="job-1", stage="upload", attempt=1):
        event = add_job_context(None, "info", {"event": "x", "job_id": "other"})

    assert event["job_id"] == "other"
    assert event["stage"] == "upload"
    assert event["attempt"] == 1
    assert "version" in event


def test_job_context_omits_unset_fields():
    event = add_job_context(None, "info", {"event": "x"})

    assert "job_id" not in event
    assert "attempt" not in event


@pytest.mark.asyncio
async def test_with_logging_scopes_stage_to_call():
    seen = []

    @with_logging("analysis")
    async def stage():
        seen.append(stage_var.get())

    await stage()

    assert seen == ["analysis"]
    assert stage_var.get() is None


def test_with_logging_restores_stage_after_error():
    @with_logging("generate_version")
    def stage():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        stage()

    assert stage_var.get() is None
