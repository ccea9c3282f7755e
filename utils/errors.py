"""Exception types raised by the selfie server."""

from __future__ import annotations

from typing import Any, Optional


class SelfieServerError(Exception):
    """Base class for every error raised by this service."""


class ConfigError(SelfieServerError):
    """Process configuration failed validation at startup."""


class TemplateLoadError(SelfieServerError):
    """The workflow template could not be read or parsed."""


class SessionNotFoundError(SelfieServerError):
    """A side-channel call referenced an unknown or expired session."""

    def __init__(self, session_id: Optional[str]) -> None:
        super().__init__(f"No transport found for sessionId {session_id!r}")
        self.session_id = session_id


class ToolCallError(SelfieServerError):
    """A tool call ended in an error result; the message is the text shown to the client."""


class JobError(SelfieServerError):
    """Base class for failures of a single image generation job."""


class RemoteStartError(JobError):
    """The job could not be submitted to the execution engine."""


class OutputMissingError(JobError):
    """The job finished but produced no usable image."""

    def __init__(self, message: str = "Generated artifact not found in job output.") -> None:
        super().__init__(message)


class RemoteJobError(JobError):
    """The execution engine reported a terminal failure for the job."""

    def __init__(self, payload: Any, job_id: Optional[str] = None) -> None:
        self.payload = payload
        self.job_id = job_id
        super().__init__(_describe_payload(payload))


class TransportLostError(JobError):
    """The engine connection dropped before any terminal event arrived."""

    def __init__(self, job_id: Optional[str] = None) -> None:
        self.job_id = job_id
        super().__init__("Connection to the execution engine was lost before the job finished.")


class StorageUploadError(SelfieServerError):
    """Re-hosting an artifact in durable storage failed."""


def _describe_payload(payload: Any) -> str:
    if isinstance(payload, BaseException):
        return str(payload) or type(payload).__name__
    if isinstance(payload, dict):
        message = payload.get("exception_message") or payload.get("message") or payload.get("error")
        if message:
            return str(message).strip()
    return str(payload)
