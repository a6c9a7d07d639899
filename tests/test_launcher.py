"""Tests for the launch state machine — the Jenkins client is scripted."""

from __future__ import annotations

import threading

import jenkins
import pytest
import requests

from jenkins_launcher.errors import AlreadyRunning, PollError, SubmissionError
from jenkins_launcher.launcher import BuildLauncher, LaunchSession, LaunchState
from jenkins_launcher.models import BuildResult

from fakes import BUILD_URL, BUILDING, JOB_URL, QUEUE_URL, QUEUED, STARTED, SUCCESS, FakeClient


def states(events):
    return [e.state for e in events]


def terminal_events(events):
    return [e for e in events if e.terminal]


# ---------------------------------------------------------------------------
# Synchronous runs
# ---------------------------------------------------------------------------
class TestRun:
    def test_queue_build_done_scenario(self, job):
        """Queued, then building, then finished with SUCCESS."""
        client = FakeClient(queue=[QUEUED, STARTED], builds=[BUILDING, SUCCESS])
        events = []

        session = BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert states(events) == [
            LaunchState.SUBMITTING,
            LaunchState.QUEUED,
            LaunchState.RUNNING,
            LaunchState.DONE,
        ]
        done = events[-1]
        assert done.result == "SUCCESS"
        assert done.console_url == "https://ci/job/x/7/consoleText"
        assert done.build_number == 7
        assert session.state is LaunchState.DONE
        assert session.queue_url == QUEUE_URL
        assert client.calls == [
            ("submit", JOB_URL, {}),
            ("queue", QUEUE_URL),
            ("queue", QUEUE_URL),
            ("last_build", JOB_URL),
            ("queue", QUEUE_URL),
            ("last_build", JOB_URL),
        ]

    def test_short_build_finishes_on_first_tick(self, job):
        """Executable present and already finished in the same tick."""
        client = FakeClient(queue=[STARTED], builds=[SUCCESS])
        events = []

        BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert states(events) == [LaunchState.SUBMITTING, LaunchState.DONE]

    def test_failed_build_is_still_done(self, job):
        failure = BuildResult(number=7, building=False, result="FAILURE", url=BUILD_URL)
        client = FakeClient(queue=[STARTED], builds=[failure])
        events = []

        BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert events[-1].state is LaunchState.DONE
        assert events[-1].result == "FAILURE"
        assert events[-1].message == "Build finished with FAILURE"

    def test_no_requests_after_done(self, job):
        client = FakeClient(queue=[STARTED], builds=[SUCCESS])

        BuildLauncher(client, interval=0).run(job, sink=lambda e: None)

        assert [c[0] for c in client.calls] == ["submit", "queue", "last_build"]

    def test_parameters_are_submitted(self, param_job):
        client = FakeClient(queue=[STARTED], builds=[SUCCESS])

        BuildLauncher(client, interval=0).run(param_job, {"BRANCH": "dev"}, sink=lambda e: None)

        assert client.calls[0] == ("submit", param_job.url, {"BRANCH": "dev"})

    def test_custom_submit_callable(self, job):
        client = FakeClient(queue=[STARTED], builds=[SUCCESS])
        events = []

        BuildLauncher(client, interval=0).run(
            job, sink=events.append, submit=lambda: "https://ci/queue/item/99/"
        )

        assert client.calls[0] == ("queue", "https://ci/queue/item/99/")
        assert events[-1].state is LaunchState.DONE

    def test_default_sink_is_session_queue(self, job):
        client = FakeClient(queue=[STARTED], builds=[SUCCESS])

        session = BuildLauncher(client, interval=0).run(job)

        assert states(session.drain()) == [LaunchState.SUBMITTING, LaunchState.DONE]
        assert session.drain() == []


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class TestErrors:
    def test_submit_failure_never_polls(self, job):
        client = FakeClient(submit_error=jenkins.JenkinsException("no such job"))
        events = []

        session = BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert session.state is LaunchState.FAILED
        assert states(events) == [LaunchState.SUBMITTING, LaunchState.FAILED]
        assert isinstance(events[-1].error, SubmissionError)
        assert "no such job" in events[-1].message
        assert [c[0] for c in client.calls] == ["submit"]

    def test_queue_request_failure_is_fatal(self, job):
        client = FakeClient(queue=[QUEUED, requests.ConnectionError("refused"), QUEUED])
        events = []

        session = BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert session.state is LaunchState.FAILED
        assert states(events) == [
            LaunchState.SUBMITTING,
            LaunchState.QUEUED,
            LaunchState.FAILED,
        ]
        assert isinstance(events[-1].error, PollError)
        assert "Error fetching queue status" in events[-1].message
        assert "refused" in events[-1].message
        assert len(client.calls) == 3

    def test_last_build_decode_failure_is_fatal(self, job):
        client = FakeClient(queue=[STARTED], builds=[ValueError("Expecting value")])
        events = []

        BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert isinstance(events[-1].error, PollError)
        assert "Error fetching job status" in events[-1].message

    def test_unexpected_body_shape_is_poll_error(self, job):
        client = FakeClient(queue=[AttributeError("'str' object has no attribute 'get'")])
        events = []

        BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert isinstance(events[-1].error, PollError)

    def test_missing_queue_location_fails_first_tick(self, job):
        client = FakeClient(location="")
        events = []

        session = BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert session.state is LaunchState.FAILED
        assert "queue location" in events[-1].message
        assert [c[0] for c in client.calls] == ["submit"]

    def test_submit_raising_submission_error_is_reported(self, job):
        client = FakeClient()
        events = []

        def submit():
            raise SubmissionError("HTTP 403")

        session = BuildLauncher(client, interval=0).run(job, sink=events.append, submit=submit)

        assert session.state is LaunchState.FAILED
        assert states(events) == [LaunchState.SUBMITTING, LaunchState.FAILED]
        assert events[-1].message == "HTTP 403"
        assert isinstance(events[-1].error, SubmissionError)
        assert client.calls == []

    def test_submit_raising_os_error_is_reported(self, job):
        client = FakeClient(submit_error=OSError("socket closed"))
        events = []

        session = BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert session.state is LaunchState.FAILED
        assert events[-1].state is LaunchState.FAILED
        assert isinstance(events[-1].error, SubmissionError)
        assert "socket closed" in events[-1].message

    def test_submit_error_in_background_is_reported(self, job):
        launcher = BuildLauncher(FakeClient(submit_error=OSError("socket closed")), interval=0)

        session = launcher.launch(job)

        assert session.join(timeout=5)
        events = session.drain()
        assert states(events) == [LaunchState.SUBMITTING, LaunchState.FAILED]
        assert isinstance(events[-1].error, SubmissionError)
        assert launcher.active() == []

    def test_unexpected_poll_error_is_reported(self, job):
        client = FakeClient(queue=[QUEUED, RuntimeError("boom")])
        events = []

        session = BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert session.state is LaunchState.FAILED
        assert isinstance(events[-1].error, PollError)
        assert "boom" in events[-1].message
        assert len(terminal_events(events)) == 1

    @pytest.mark.parametrize(
        "client",
        [
            FakeClient(submit_error=jenkins.NotFoundException("gone")),
            FakeClient(queue=[requests.Timeout("slow")]),
            FakeClient(queue=[STARTED], builds=[BUILDING, jenkins.JenkinsException("500")]),
            FakeClient(queue=[QUEUED, STARTED], builds=[BUILDING, SUCCESS]),
        ],
    )
    def test_exactly_one_terminal_event(self, job, client):
        events = []

        BuildLauncher(client, interval=0).run(job, sink=events.append)

        assert len(terminal_events(events)) == 1
        assert events[-1].terminal


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------
class TestCancellation:
    def test_cancel_while_polling_queue_is_silent(self, job):
        client = FakeClient(queue=[QUEUED])
        events = []
        session = LaunchSession(client, job, interval=0, sink=events.append)
        client.on_queue = session.cancel

        assert session.run() is LaunchState.CANCELLED
        assert states(events) == [LaunchState.SUBMITTING]
        assert [c[0] for c in client.calls] == ["submit", "queue"]

    def test_cancel_before_last_build_request(self, job):
        client = FakeClient(queue=[STARTED], builds=[SUCCESS])
        events = []
        session = LaunchSession(client, job, interval=0, sink=events.append)
        client.on_queue = session.cancel

        session.run()

        assert session.state is LaunchState.CANCELLED
        assert terminal_events(events) == []
        assert [c[0] for c in client.calls] == ["submit", "queue"]

    def test_poll_error_after_cancel_is_not_reported(self, job):
        client = FakeClient(queue=[requests.ConnectionError("closed")])
        events = []
        session = LaunchSession(client, job, interval=0, sink=events.append)
        client.on_queue = session.cancel

        session.run()

        assert session.state is LaunchState.CANCELLED
        assert terminal_events(events) == []

    def test_cancel_before_start_sends_nothing(self, job):
        client = FakeClient()
        session = LaunchSession(client, job, interval=0, sink=lambda e: None)
        session.cancel()

        assert session.run() is LaunchState.CANCELLED
        assert client.calls == []


# ---------------------------------------------------------------------------
# Background sessions
# ---------------------------------------------------------------------------
class TestBuildLauncher:
    def test_launch_runs_in_background(self, job):
        client = FakeClient(queue=[QUEUED, STARTED], builds=[BUILDING, SUCCESS])
        launcher = BuildLauncher(client, interval=0)

        session = launcher.launch(job)

        assert session.join(timeout=5)
        assert session.state is LaunchState.DONE
        assert states(session.drain())[-1] is LaunchState.DONE
        assert launcher.active() == []
        assert launcher.get(session.id) is session

    def test_second_launch_of_same_job_is_rejected(self, job, param_job):
        launcher = BuildLauncher(FakeClient(queue=[QUEUED]), interval=30)
        first = launcher.launch(job)
        try:
            with pytest.raises(AlreadyRunning) as excinfo:
                launcher.launch(job)
            assert excinfo.value.job_name == "x"

            other = launcher.launch(param_job)
            assert {s.id for s in launcher.active()} == {first.id, other.id}
        finally:
            launcher.shutdown(timeout=5)

    def test_shutdown_cancels_outstanding_sessions(self, job):
        client = FakeClient(queue=[QUEUED])
        launcher = BuildLauncher(client, interval=30)
        submitted = threading.Event()

        def submit():
            try:
                return client.submit_build(job)
            finally:
                submitted.set()

        session = launcher.launch(job, submit=submit)
        assert submitted.wait(timeout=5)

        launcher.shutdown(timeout=5)

        assert session.finished
        assert session.state is LaunchState.CANCELLED
        assert terminal_events(session.drain()) == []
        assert launcher.active() == []
        # the first poll waits a full interval after the submission
        assert client.calls == [("submit", JOB_URL, {})]

    def test_polls_are_spaced_by_interval(self, job):
        client = FakeClient(queue=[QUEUED, QUEUED, STARTED], builds=[SUCCESS])

        BuildLauncher(client, interval=0.05).run(job, sink=lambda e: None)

        assert [c[0] for c in client.calls] == ["submit", "queue", "queue", "queue", "last_build"]
        submit_and_polls = client.stamps[:4]
        gaps = [b - a for a, b in zip(submit_and_polls, submit_and_polls[1:])]
        assert all(gap >= 0.04 for gap in gaps), gaps

    def test_finished_session_can_be_forgotten(self, job):
        launcher = BuildLauncher(FakeClient(queue=[STARTED], builds=[SUCCESS]), interval=0)
        session = launcher.run(job)

        assert launcher.forget(session.id) is True
        assert launcher.get(session.id) is None
        assert launcher.forget(session.id) is False

    def test_running_session_is_not_forgotten(self, job):
        launcher = BuildLauncher(FakeClient(queue=[QUEUED]), interval=30)
        session = launcher.launch(job)
        try:
            assert launcher.forget(session.id) is False
            assert launcher.get(session.id) is session
        finally:
            launcher.shutdown(timeout=5)

    def test_discarded_session_releases_job(self, job):
        client = FakeClient(queue=[STARTED], builds=[SUCCESS])
        launcher = BuildLauncher(client, interval=0)
        session = launcher.open(job)

        launcher.discard(session)

        assert launcher.get(session.id) is None
        assert launcher.active() == []
        assert client.calls == []
        assert launcher.run(job).state is LaunchState.DONE

    def test_job_can_be_relaunched_after_finishing(self, job):
        launcher = BuildLauncher(FakeClient(queue=[STARTED], builds=[SUCCESS]), interval=0)

        first = launcher.run(job)
        second = launcher.run(job)

        assert first.id != second.id
        assert second.state is LaunchState.DONE

    def test_cancel_by_id(self, job):
        launcher = BuildLauncher(FakeClient(queue=[QUEUED]), interval=30)
        session = launcher.launch(job)

        assert launcher.cancel(session.id) is True
        assert session.join(timeout=5)
        assert session.state is LaunchState.CANCELLED
        assert launcher.cancel(session.id) is False
        assert launcher.cancel("unknown") is False
