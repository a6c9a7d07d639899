"""Errors raised while launching and tracking Jenkins builds."""


class LaunchError(Exception):
    """Base class for every launch failure surfaced to callers."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class SubmissionError(LaunchError):
    """The build trigger request failed; the session never starts polling."""


class PollError(LaunchError):
    """A queue or last-build request failed, or its body could not be decoded."""


class AlreadyRunning(LaunchError):
    """A launch for the same job is still outstanding."""

    def __init__(self, job_name: str) -> None:
        super().__init__(f"A launch of '{job_name}' is already in progress.")
        self.job_name = job_name


class ConfigurationError(ValueError):
    """Required settings are missing or malformed."""
