"""Jenkins client wrapper with environment-based configuration.

Every call goes through a python-jenkins ``Jenkins`` instance, which adds
the Basic credentials and the CSRF crumb to each request.
"""

from __future__ import annotations

import logging
import os
from typing import Any
from urllib.parse import urljoin

import jenkins
import requests

from jenkins_launcher.config import get_request_timeout
from jenkins_launcher.errors import ConfigurationError
from jenkins_launcher.models import BuildResult, JobRef, QueueItem

logger = logging.getLogger(__name__)

LINK_PATHS = {
    "new_job": "view/all/newJob",
    "nodes": "computer",
    "manage": "manage",
}


class JenkinsClient:
    """URL-oriented access to the parts of the Jenkins API a launch needs."""

    def __init__(self, server: jenkins.Jenkins) -> None:
        self._server = server

    @property
    def base_url(self) -> str:
        return self._server.server

    def resolve(self, url: str) -> str:
        """Return ``url`` as an absolute URL on the configured server."""
        if url.startswith(("http://", "https://")):
            return url
        return urljoin(self.base_url, url.lstrip("/"))

    def _get_json(self, url: str) -> dict[str, Any]:
        response = self._server.jenkins_request(
            requests.Request("GET", self.resolve(url))
        )
        return response.json()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def list_jobs(self) -> list[JobRef]:
        info = self._server.get_info()
        return [JobRef.from_json(job) for job in info.get("jobs", [])]

    def get_job(self, name: str) -> JobRef:
        return JobRef.from_json(self._server.get_job_info(name))

    # ------------------------------------------------------------------
    # Launching
    # ------------------------------------------------------------------
    def submit_build(self, job: JobRef, parameters: dict[str, str] | None = None) -> str:
        """Trigger ``job`` and return the queue item URL from ``Location``.

        An empty parameter map triggers a plain ``build``; anything else is
        form-encoded and posted to ``buildWithParameters``.
        """
        if parameters:
            url = job.url + "buildWithParameters"
            request = requests.Request("POST", self.resolve(url), data=dict(parameters))
        else:
            url = job.url + "build"
            request = requests.Request("POST", self.resolve(url))
        logger.debug("POST %s", url)
        response = self._server.jenkins_request(request)
        return response.headers.get("Location", "")

    def get_queue_item(self, queue_url: str) -> QueueItem:
        return QueueItem.from_json(self._get_json(queue_url + "api/json"))

    def get_last_build(self, job_url: str) -> BuildResult:
        return BuildResult.from_json(self._get_json(job_url + "lastBuild/api/json"))

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------
    def links(self, username: str = "") -> dict[str, str]:
        """Browser links for common Jenkins pages."""
        links = {key: self.resolve(path) for key, path in LINK_PATHS.items()}
        if username:
            links["user_security"] = self.resolve(f"user/{username}/security/")
        return links


def get_client() -> JenkinsClient:
    """Create a Jenkins client from environment variables.

    Environment variables:
        JENKINS_URL: Jenkins server URL (required)
        JENKINS_USERNAME: Jenkins username (optional)
        JENKINS_API_TOKEN: Jenkins API token (optional)
        JENKINS_TIMEOUT: Request timeout in seconds (optional)

    Returns:
        A configured client instance.

    Raises:
        ConfigurationError: If JENKINS_URL is not set.
    """
    url = os.environ.get("JENKINS_URL")
    if not url:
        raise ConfigurationError(
            "JENKINS_URL environment variable is required. "
            "Please set it to your Jenkins server URL."
        )
    username = os.environ.get("JENKINS_USERNAME", "")
    token = os.environ.get("JENKINS_API_TOKEN", "")
    timeout = get_request_timeout()
    if timeout is None:
        server = jenkins.Jenkins(url, username=username, password=token)
    else:
        server = jenkins.Jenkins(url, username=username, password=token, timeout=timeout)
    return JenkinsClient(server)
