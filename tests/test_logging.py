"""
Tests for secret redaction and job-scoped log context.
"""

import structlog

from core.logging import REDACTED, job_log_context, redact_secrets
from models.database import Job


def test_secrets_are_redacted():
    event = redact_secrets(None, "info", {
        "event": "Public execution rejected",
        "token": "tok-123",
        "Authorization": "Bearer abc",
        "smtp_password": "hunter2",
        "slug": "lead-intake",
        "api_key": None,
    })

    assert event["token"] == REDACTED
    assert event["Authorization"] == REDACTED
    assert event["smtp_password"] == REDACTED
    assert event["slug"] == "lead-intake"
    assert event["api_key"] is None


def test_job_context_is_bound_and_cleared():
    job = Job(id="job-1", workflow_id="wf-1", execution_id="exec-1", org_id="org-1", attempts=2)

    with job_log_context(job, "worker-a"):
        bound = structlog.contextvars.get_contextvars()
        assert bound["job_id"] == "job-1"
        assert bound["execution_id"] == "exec-1"
        assert bound["attempt"] == 3
        assert bound["worker_id"] == "worker-a"

    assert "job_id" not in structlog.contextvars.get_contextvars()
