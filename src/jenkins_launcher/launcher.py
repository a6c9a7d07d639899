"""Launch a Jenkins build and follow it until it finishes.

A :class:`LaunchSession` submits the build request, then polls the queue
item until an executor picks it up, then polls the job's last build until it
is no longer building. Each step is reported as a :class:`StatusEvent` to a
sink; the presentation layer consumes those events and owns its own state.

Only one tick is in flight at a time. Cancellation is cooperative: the
signal is checked after every wait and before every request, and a
cancelled session emits nothing further.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Protocol

import jenkins
import requests

from jenkins_launcher.config import DEFAULT_POLL_INTERVAL
from jenkins_launcher.errors import AlreadyRunning, LaunchError, PollError, SubmissionError
from jenkins_launcher.models import BuildResult, JobRef, QueueItem

logger = logging.getLogger(__name__)

# ValueError covers undecodable JSON bodies.
REQUEST_ERRORS = (jenkins.JenkinsException, requests.RequestException, ValueError)
# Bodies that decode but do not have the expected shape.
DECODE_ERRORS = (KeyError, TypeError, AttributeError)


class LaunchState(enum.Enum):
    SUBMITTING = "SUBMITTING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (LaunchState.DONE, LaunchState.FAILED, LaunchState.CANCELLED)


@dataclass(frozen=True)
class StatusEvent:
    state: LaunchState
    job_name: str
    message: str
    result: str = ""
    console_url: str = ""
    build_number: int | None = None
    error: LaunchError | None = None

    @property
    def terminal(self) -> bool:
        return self.state in (LaunchState.DONE, LaunchState.FAILED)

    def to_dict(self) -> dict:
        data = {
            "state": self.state.value,
            "job_name": self.job_name,
            "message": self.message,
        }
        if self.result:
            data["result"] = self.result
        if self.console_url:
            data["console_url"] = self.console_url
        if self.build_number is not None:
            data["build_number"] = self.build_number
        return data


class Client(Protocol):
    def submit_build(self, job: JobRef, parameters: dict[str, str] | None = None) -> str: ...

    def get_queue_item(self, queue_url: str) -> QueueItem: ...

    def get_last_build(self, job_url: str) -> BuildResult: ...


Sink = Callable[[StatusEvent], None]


class LaunchSession:
    """One in-flight launch: submit, wait for the queue, wait for the build."""

    def __init__(
        self,
        client: Client,
        job: JobRef,
        parameters: dict[str, str] | None = None,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        sink: Sink | None = None,
        submit: Callable[[], str] | None = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.job = job
        self.parameters = dict(parameters or {})
        self.interval = interval
        self.queue_url = ""
        self.state = LaunchState.SUBMITTING
        self.events: queue.Queue[StatusEvent] = queue.Queue()
        self._client = client
        self._sink = sink or self.events.put
        self._submit = submit or (lambda: client.submit_build(job, self.parameters))
        self._cancel = threading.Event()
        self._finished = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------
    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def start(self, on_exit: Callable[[LaunchSession], None] | None = None) -> None:
        def target() -> None:
            try:
                self.run()
            finally:
                if on_exit is not None:
                    on_exit(self)

        self._thread = threading.Thread(
            target=target, name=f"launch-{self.job.name}", daemon=True
        )
        self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.finished

    def drain(self) -> list[StatusEvent]:
        """Return the events queued since the last call."""
        events = []
        while True:
            try:
                events.append(self.events.get_nowait())
            except queue.Empty:
                return events

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------
    def run(self) -> LaunchState:
        """Drive the session to a terminal state and return it."""
        try:
            self._run()
        finally:
            if not self.state.terminal:
                self.state = LaunchState.CANCELLED if self.cancelled else LaunchState.FAILED
            if self.state is LaunchState.CANCELLED:
                logger.info("Launch of '%s' cancelled", self.job.name)
            self._finished.set()
        return self.state

    def _run(self) -> None:
        if self.cancelled:
            return
        self._emit(LaunchState.SUBMITTING, f"Launching job: {self.job.name}...")
        try:
            self.queue_url = self._submit() or ""
        except LaunchError as e:
            if not self.cancelled:
                self._fail(e)
            return
        except Exception as e:
            if not self.cancelled:
                self._fail(SubmissionError(f"Error launching job: {e}"))
            return
        logger.info("Job '%s' submitted, queue item %s", self.job.name, self.queue_url or "<none>")

        while not self._cancel.wait(self.interval):
            try:
                done = self._tick()
            except LaunchError as e:
                if not self.cancelled:
                    self._fail(e)
                return
            except Exception as e:
                if not self.cancelled:
                    logger.exception("Unexpected error while following '%s'", self.job.name)
                    self._fail(PollError(f"Error checking build status: {e}"))
                return
            if done:
                return

    def _tick(self) -> bool:
        """Poll once. Returns True when the session reached a terminal state."""
        logger.debug("Checking status of '%s'", self.job.name)
        if not self.queue_url:
            raise PollError("Jenkins did not return a queue location for the build.")

        item = self._request(
            "queue status", self._client.get_queue_item, self.queue_url
        )
        if item is None:
            return True
        if not item.started:
            self._emit(LaunchState.QUEUED, "Job in queue...")
            return False

        build = self._request(
            "job status", self._client.get_last_build, self.job.url
        )
        if build is None:
            return True
        if build.building:
            self._emit(
                LaunchState.RUNNING, "Building...", build_number=build.number
            )
            return False

        self._emit(
            LaunchState.DONE,
            f"Build finished with {build.result}",
            result=build.result,
            console_url=build.console_url,
            build_number=build.number,
        )
        return True

    def _request(self, what: str, func, url: str):
        # None means the session was cancelled before the request went out.
        if self.cancelled:
            return None
        try:
            return func(url)
        except REQUEST_ERRORS + DECODE_ERRORS as e:
            raise PollError(f"Error fetching {what}: {e}") from e

    def _emit(self, state: LaunchState, message: str, **kwargs) -> None:
        if self.cancelled:
            return
        self.state = state
        event = StatusEvent(state=state, job_name=self.job.name, message=message, **kwargs)
        logger.info("[%s] %s", self.job.name, message)
        self._sink(event)

    def _fail(self, error: LaunchError) -> None:
        self.state = LaunchState.FAILED
        logger.error("[%s] %s", self.job.name, error.message)
        self._sink(
            StatusEvent(
                state=LaunchState.FAILED,
                job_name=self.job.name,
                message=error.message,
                error=error,
            )
        )


class BuildLauncher:
    """Starts launch sessions and keeps at most one outstanding per job."""

    def __init__(self, client: Client, interval: float = DEFAULT_POLL_INTERVAL) -> None:
        self._client = client
        self._interval = interval
        self._lock = threading.Lock()
        self._active: dict[str, LaunchSession] = {}
        self._sessions: dict[str, LaunchSession] = {}

    def open(
        self,
        job: JobRef,
        parameters: dict[str, str] | None = None,
        *,
        sink: Sink | None = None,
        submit: Callable[[], str] | None = None,
    ) -> LaunchSession:
        """Register a session for ``job`` without starting it.

        Raises:
            AlreadyRunning: If a session for ``job`` has not finished yet.
        """
        session = LaunchSession(
            self._client,
            job,
            parameters,
            interval=self._interval,
            sink=sink,
            submit=submit,
        )
        with self._lock:
            if job.name in self._active:
                raise AlreadyRunning(job.name)
            self._active[job.name] = session
            self._sessions[session.id] = session
        return session

    def start(self, session: LaunchSession) -> LaunchSession:
        """Run an opened session on a worker thread."""
        session.start(on_exit=self._close)
        return session

    def _close(self, session: LaunchSession) -> None:
        with self._lock:
            if self._active.get(session.job.name) is session:
                del self._active[session.job.name]

    def discard(self, session: LaunchSession) -> None:
        """Drop an opened session that was never started."""
        with self._lock:
            if self._active.get(session.job.name) is session:
                del self._active[session.job.name]
            self._sessions.pop(session.id, None)

    def forget(self, session_id: str) -> bool:
        """Drop a finished session. Running sessions are kept."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.finished:
                return False
            del self._sessions[session_id]
            return True

    def launch(
        self,
        job: JobRef,
        parameters: dict[str, str] | None = None,
        *,
        sink: Sink | None = None,
        submit: Callable[[], str] | None = None,
    ) -> LaunchSession:
        """Start a session on a worker thread and return it immediately.

        Raises:
            AlreadyRunning: If a session for ``job`` has not finished yet.
        """
        return self.start(self.open(job, parameters, sink=sink, submit=submit))

    def run(
        self,
        job: JobRef,
        parameters: dict[str, str] | None = None,
        *,
        sink: Sink | None = None,
        submit: Callable[[], str] | None = None,
    ) -> LaunchSession:
        """Like :meth:`launch` but blocks the caller until the session ends."""
        session = self.open(job, parameters, sink=sink, submit=submit)
        try:
            session.run()
        finally:
            self._close(session)
        return session

    def get(self, session_id: str) -> LaunchSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def active(self) -> list[LaunchSession]:
        with self._lock:
            return list(self._active.values())

    def cancel(self, session_id: str) -> bool:
        session = self.get(session_id)
        if session is None or session.finished:
            return False
        session.cancel()
        return True

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancel every outstanding session and wait for its thread to exit."""
        sessions = self.active()
        for session in sessions:
            session.cancel()
        for session in sessions:
            session.join(timeout)
