"""Error taxonomy for a render-server invocation.

Each pipeline stage owns one family. Nothing is retried; the first error
aborts the invocation and reaches the caller unchanged.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ComfyError(RuntimeError):
    def __init__(self, message: str, *, description: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.description = description or ""

    def __str__(self) -> str:
        return self.message


class ServerUnavailable(ComfyError):
    pass


# --- inputs ---


class InputError(ComfyError):
    pass


class InputFetchFailed(InputError):
    pass


class InputDecodeFailed(InputError):
    pass


class AttachmentNotFound(InputError):
    pass


class WrongMediaType(InputError):
    pass


# --- upload ---


class UploadError(ComfyError):
    pass


class UploadTransportError(UploadError):
    pass


class MalformedUploadResponse(UploadError):
    pass


# --- workflow graph ---


class GraphError(ComfyError):
    pass


class InvalidWorkflowJson(GraphError):
    pass


class WorkflowNotAnObject(GraphError):
    pass


class NodeNotFound(GraphError):
    pass


class KindNotFound(GraphError):
    pass


class InsufficientMatches(GraphError):
    pass


class InvalidNodeShape(GraphError):
    pass


# --- submission ---


class SubmitError(ComfyError):
    pass


class SubmitTransportError(SubmitError):
    pass


class NoJobId(SubmitError):
    pass


# --- polling ---


class PollError(ComfyError):
    pass


class JobFailed(PollError):
    def __init__(
        self,
        message: str,
        *,
        description: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, description=description)
        self.details = details or {}


class PollTimeout(PollError):
    pass


class PollTransportError(PollError):
    pass


# --- outputs ---


class OutputError(ComfyError):
    pass


class NoMatchingOutput(OutputError):
    pass


class OutputNotFound(OutputError):
    pass


class OutputFetchFailed(OutputError):
    pass
