import pytest
from parallel_execution_client.errors import (
    JobFailedError,
    SubmissionError,
    TransportError,
    is_transient,
)
from parallel_execution_client.models import (
    ExecutionInput,
    ExecutionTemplate,
    FailureDetail,
    JobHandle,
    JobStatus,
    Outcome,
    OutcomeStatus,
    RetryPolicy,
    job_status_from_code,
)
from pydantic import ValidationError

RATE_LIMITED = FailureDetail(code="job_failed", message="Rate limit exceeded")
OTHER = FailureDetail(code="job_failed", message="Division by zero")


@pytest.mark.parametrize("attempt, expected", [(1, True), (2, True), (3, False), (10, False)])
def test_retry_limited_by_count(attempt, expected):
    policy = RetryPolicy(retry_on="rate.?limit", retry_count=2)
    assert policy.should_retry(RATE_LIMITED, attempt) is expected


def test_retry_requires_matching_message():
    policy = RetryPolicy(retry_on="rate.?limit", retry_count=2)
    assert not policy.should_retry(OTHER, 1)


def test_no_retries_without_pattern():
    policy = RetryPolicy(retry_count=100)
    assert not policy.should_retry(RATE_LIMITED, 1)


def test_no_retries_with_zero_count():
    policy = RetryPolicy(retry_on=".*")
    assert not policy.should_retry(RATE_LIMITED, 1)
    assert not policy.should_retry(OTHER, 1)


def test_retry_pattern_matches_anywhere_ignoring_case():
    policy = RetryPolicy(retry_on="LIMIT", retry_count=1)
    assert policy.should_retry(RATE_LIMITED, 1)


def test_retry_decision_is_repeatable():
    policy = RetryPolicy(retry_on="rate", retry_count=1)
    assert [policy.should_retry(RATE_LIMITED, 1) for _ in range(3)] == [True, True, True]


@pytest.mark.parametrize(
    "kwargs",
    [
        {"retry_on": "("},
        {"retry_count": -1},
        {"initial_delay": -1},
        {"backoff_factor": 0.5},
        {"initial_delay": 60, "max_delay": 30},
    ],
)
def test_invalid_retry_policy(kwargs):
    with pytest.raises(ValidationError):
        RetryPolicy(**kwargs)


def test_retry_delay_schedule():
    policy = RetryPolicy()
    delays = [policy.initial_delay]
    for _ in range(6):
        delays.append(policy.next_delay(delays[-1]))
    assert delays == [120.0, 240.0, 480.0, 960.0, 1920.0, 3600.0, 3600.0]


@pytest.mark.parametrize(
    "text, value",
    [
        ("x=null", None),
        ("x=true", True),
        ("x=0", 0),
        ("x=[true]", [True]),
        ('x="hi"', "hi"),
        ('x={"a": 1}', {"a": 1}),
        ("x=hi", "hi"),
        ("x=a=b", "a=b"),
    ],
)
def test_execution_input_parsing(text, value):
    parsed = ExecutionInput.parse(text)
    assert parsed.name == "x"
    assert parsed.value == value


def test_execution_input_requires_equals():
    with pytest.raises(ValueError):
        ExecutionInput.parse("novalue")


def test_template_builds_work_items():
    template = ExecutionTemplate(
        script="script/abc",
        name="nightly",
        resource_input_name="dataset",
        inputs=[ExecutionInput.parse("k=3"), ExecutionInput.parse("skip=null")],
        outputs=["score"],
        tags=["batch", "nightly"],
    )

    item = template.work_item("dataset/1")

    assert item.resource == "dataset/1"
    assert item.args.request_body() == {
        "script": "script/abc",
        "name": "nightly",
        "inputs": [["dataset", "dataset/1"], ["k", 3]],
        "outputs": ["score"],
        "tags": ["batch", "nightly"],
    }
    assert template.work_item("dataset/2").args.tags == item.args.tags


def test_work_items_are_immutable():
    item = ExecutionTemplate(script="script/abc").work_item("dataset/1")
    with pytest.raises(ValidationError):
        item.resource = "dataset/2"


def test_minimal_request_body():
    item = ExecutionTemplate(script="script/abc").work_item("dataset/1")
    assert item.args.request_body() == {"script": "script/abc", "inputs": [["resource", "dataset/1"]]}


@pytest.mark.parametrize(
    "code, status",
    [
        (0, JobStatus.waiting),
        (1, JobStatus.waiting),
        (4, JobStatus.waiting),
        (5, JobStatus.ready),
        (-1, JobStatus.failed),
        (-2, JobStatus.failed),
    ],
)
def test_job_status_from_code(code, status):
    assert job_status_from_code(code) is status


def test_unknown_status_code():
    with pytest.raises(ValueError):
        job_status_from_code(9)


@pytest.mark.parametrize(
    "error, expected",
    [
        (TransportError("down", connection=True), True),
        (TransportError("500", status=500), True),
        (TransportError("503", status=503), True),
        (TransportError("504", status=504), True),
        (TransportError("402", status=402), True),
        (TransportError("429", status=429), True),
        (TransportError("401", status=401), False),
        (TransportError("404", status=404), False),
        (TransportError("malformed"), False),
        (SubmissionError("nope"), False),
        (ValueError("nope"), False),
    ],
)
def test_is_transient(error, expected):
    assert is_transient(error) is expected


def test_error_details():
    handle = JobHandle(id="execution/1")
    failure = FailureDetail(code="job_failed", message="boom", cause="script error")
    assert JobFailedError(handle, failure).detail is failure
    assert str(JobFailedError(handle, failure)) == "execution/1 failed (boom (script error))"
    assert TransportError("401 for x", status=401).detail.status_code == 401
    assert SubmissionError("nope", cause=ValueError("bad")).detail.cause == "bad"


def test_outcome_record():
    outcome = Outcome(
        resource="dataset/1",
        status=OutcomeStatus.exhausted_retries,
        attempts=3,
        error=RATE_LIMITED,
    )
    assert outcome.failed
    assert outcome.model_dump(mode="json")["status"] == "exhausted_retries"
