"""Jenkins Launcher MCP Server — launch Jenkins builds and follow them."""

from __future__ import annotations

import logging
import os
from typing import Any

import jenkins
import requests
from fastmcp import FastMCP

from jenkins_launcher.config import configure_logging, get_poll_interval
from jenkins_launcher.errors import LaunchError
from jenkins_launcher.jenkins_client import get_client
from jenkins_launcher.launch_store import LaunchStore, get_store
from jenkins_launcher.launcher import BuildLauncher, LaunchSession, LaunchState, StatusEvent

logger = logging.getLogger(__name__)

mcp = FastMCP("Jenkins Launcher")

_launcher: BuildLauncher | None = None

ABANDONED = "ABANDONED"


def get_launcher() -> BuildLauncher:
    """Return the module-level launcher, creating it on first use."""
    global _launcher
    if _launcher is None:
        _launcher = BuildLauncher(get_client(), interval=get_poll_interval())
    return _launcher


def _format_error(e: Exception) -> dict[str, Any]:
    """Format an exception into a consistent error response."""
    return {"error": True, "message": str(e)}


def _resolve_parameters(job, supplied: dict[str, Any] | None) -> dict[str, str]:
    """Fill the job's declared parameters, defaults first, then *supplied*."""
    supplied = supplied or {}
    if supplied and not job.has_parameters:
        raise ValueError(f"Job '{job.name}' does not take any parameters")
    known = {p.name for p in job.parameters}
    unknown = [name for name in supplied if name not in known]
    if unknown:
        raise ValueError(f"These parameters do not exist: {', '.join(unknown)}")
    params = job.default_parameters()
    params.update({k: "" if v is None else str(v) for k, v in supplied.items()})
    return params


def _record_events(store: LaunchStore, session: LaunchSession, events: list[StatusEvent]) -> None:
    for event in events:
        store.update(
            session.id,
            status=event.state.value,
            message=event.message,
            queue_url=session.queue_url or None,
            build_number=event.build_number,
            result=event.result or None,
            console_url=event.console_url or None,
            finished=event.terminal,
        )
    if session.finished and session.state is LaunchState.CANCELLED:
        store.update(session.id, status=LaunchState.CANCELLED.value, finished=True)


def _sync(store: LaunchStore, launcher: BuildLauncher, session: LaunchSession) -> list[StatusEvent]:
    # Read before draining: a finished session queues nothing further.
    finished = session.finished
    events = session.drain()
    _record_events(store, session, events)
    if finished:
        launcher.forget(session.id)
    return events


def _abandon(store: LaunchStore, record: dict[str, Any]) -> dict[str, Any]:
    """Close a record whose session is gone, e.g. left by a previous process."""
    if record.get("finished_at"):
        return record
    return store.update(
        record["launch_id"],
        status=ABANDONED,
        message="The server stopped following this launch before it finished.",
        finished=True,
    ) or record


# ---------------------------------------------------------------------------
# Tool 1: list_jobs
# ---------------------------------------------------------------------------
@mcp.tool
def list_jobs() -> dict[str, Any]:
    """List the jobs on the Jenkins server.

    Returns:
        A dict with the name, url and status color of every job.
    """
    try:
        jobs = get_client().list_jobs()
        return {
            "success": True,
            "count": len(jobs),
            "jobs": [{"name": j.name, "url": j.url, "color": j.color} for j in jobs],
        }
    except (jenkins.JenkinsException, requests.RequestException, ValueError) as e:
        return _format_error(e)


# ---------------------------------------------------------------------------
# Tool 2: get_job_parameters
# ---------------------------------------------------------------------------
@mcp.tool
def get_job_parameters(job_name: str) -> dict[str, Any]:
    """Get the parameter definitions for a Jenkins job.

    Args:
        job_name: Full name of the Jenkins job.

    Returns:
        A dict with the name, description and default value of each
        parameter. An empty list means the job is launched without
        parameters.
    """
    try:
        job = get_client().get_job(job_name)
        params = [
            {"name": p.name, "description": p.description, "default_value": p.default}
            for p in job.parameters
        ]
        return {
            "success": True,
            "job_name": job.name,
            "parameter_count": len(params),
            "parameters": params,
        }
    except (jenkins.JenkinsException, requests.RequestException, ValueError) as e:
        return _format_error(e)


# ---------------------------------------------------------------------------
# Tool 3: launch_job
# ---------------------------------------------------------------------------
@mcp.tool
def launch_job(job_name: str, parameters: dict[str, Any] | None = None) -> dict[str, Any]:
    """Launch a Jenkins build and follow it in the background.

    Parameters the job declares but that are not supplied are sent with
    their default value.

    Args:
        job_name: Full name of the Jenkins job.
        parameters: Optional dict of build parameters (key-value pairs).

    Returns:
        A dict with the launch_id to pass to get_launch_status.
    """
    try:
        launcher = get_launcher()
        job = get_client().get_job(job_name)
        params = _resolve_parameters(job, parameters)
        session = launcher.open(job, params)
    except (LaunchError, jenkins.JenkinsException, requests.RequestException, ValueError) as e:
        return _format_error(e)

    try:
        get_store().add(launch_id=session.id, job_name=job.name, parameters=params)
    except OSError as e:
        launcher.discard(session)
        return _format_error(e)
    launcher.start(session)
    return {
        "success": True,
        "launch_id": session.id,
        "job_name": job.name,
        "parameters": params,
        "message": f"Job '{job.name}' launched. Waiting for it to finish...",
    }


# ---------------------------------------------------------------------------
# Tool 4: get_launch_status
# ---------------------------------------------------------------------------
@mcp.tool
def get_launch_status(launch_id: str) -> dict[str, Any]:
    """Get the current state of a launch and the events since the last call.

    Args:
        launch_id: Identifier returned by launch_job.

    Returns:
        The launch record (status, result, console_url...) and the list of
        new status events.
    """
    store = get_store()
    launcher = get_launcher()
    session = launcher.get(launch_id)
    events: list[StatusEvent] = []
    if session is not None:
        events = _sync(store, launcher, session)

    record = store.get(launch_id)
    if record is None:
        return _format_error(LookupError(f"Unknown launch: {launch_id}"))
    if session is None:
        record = _abandon(store, record)
    return {
        "success": True,
        "launch": record,
        "events": [e.to_dict() for e in events],
        "finished": record.get("finished_at") is not None,
    }


# ---------------------------------------------------------------------------
# Tool 5: cancel_launch
# ---------------------------------------------------------------------------
@mcp.tool
def cancel_launch(launch_id: str) -> dict[str, Any]:
    """Stop following a launch.

    The build itself keeps running on Jenkins; only the polling stops.

    Args:
        launch_id: Identifier returned by launch_job.
    """
    launcher = get_launcher()
    session = launcher.get(launch_id)
    if session is None or not launcher.cancel(launch_id):
        return _format_error(LookupError(f"No launch in progress with id {launch_id}"))
    session.join(timeout=5)
    _sync(get_store(), launcher, session)
    return {
        "success": True,
        "launch_id": launch_id,
        "message": f"Stopped following '{session.job.name}'.",
    }


# ---------------------------------------------------------------------------
# Tool 6: list_launches
# ---------------------------------------------------------------------------
@mcp.tool
def list_launches() -> dict[str, Any]:
    """List every launch recorded by this server, newest first."""
    store = get_store()
    launcher = get_launcher()
    for record in store.list_all():
        session = launcher.get(record["launch_id"])
        if session is not None:
            _sync(store, launcher, session)
        else:
            _abandon(store, record)

    records = store.list_all()
    result: dict[str, Any] = {"success": True, "total": len(records), "records": records}
    if not records:
        result["message"] = "No jobs have been launched yet."
    return result


# ---------------------------------------------------------------------------
# Tool 7: get_jenkins_links
# ---------------------------------------------------------------------------
@mcp.tool
def get_jenkins_links() -> dict[str, Any]:
    """Links to common Jenkins pages: new job, nodes, management and the
    page where the configured user creates API tokens."""
    try:
        links = get_client().links(os.environ.get("JENKINS_USERNAME", ""))
    except ValueError as e:
        return _format_error(e)
    return {"success": True, "links": links}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main() -> None:
    configure_logging()
    logger.info("Starting Jenkins Launcher MCP server")
    try:
        mcp.run()
    finally:
        if _launcher is not None:
            _launcher.shutdown(timeout=5)


if __name__ == "__main__":
    main()
