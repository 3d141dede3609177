"""Exceptions raised by pipeline collaborators.

Malformed guest input is never an error: detectors and classifiers report
"no match" and the pipeline carries on. Only upstream calls raise.
"""


class PipelineError(Exception):
    """Base class for errors raised by pipeline collaborators."""


class TransientUpstreamError(PipelineError):
    """An upstream call failed in a way that is worth retrying."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class FatalUpstreamError(PipelineError):
    """An upstream call failed for good, or its retries were exhausted."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)
