"""Exception types raised by the runner core."""
from typing import Any, Optional


class RunnerError(Exception):
    """Base class for local runner errors."""


class TemplateError(RunnerError):
    """A workflow template could not be used."""


class TemplateInvalid(TemplateError):
    def __init__(self, path: str, detail: str = "not an object"):
        self.path = path
        self.detail = detail
        super().__init__(f"Workflow template is invalid: {path} ({detail})")


class TemplateNodeMissing(TemplateError):
    def __init__(self, node_id: str, label: str):
        self.node_id = node_id
        self.label = label
        super().__init__(f"Workflow node {label} ({node_id}) is missing")


class InitImageRequired(RunnerError):
    def __init__(self):
        super().__init__("initImage is required for image2i")


class RunRequestInvalid(RunnerError):
    def __init__(self, issues: list[str]):
        self.issues = issues
        super().__init__("; ".join(issues))


class WorkflowPrepareFailed(RunnerError):
    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(f"Failed to prepare workflow: {cause}")


class RunNotFound(RunnerError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__("Run not found")


class PromptIdRequired(RunnerError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__("prompt_id is required")


class RunSubmissionFailed(RunnerError):
    """The run row exists and was written as failed."""

    def __init__(self, run: Any, message: str, details: Optional[dict] = None):
        self.run = run
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ComfyRequestError(Exception):
    """Failure talking to the ComfyUI HTTP API.

    ``kind`` is one of ``timeout``, ``unreachable``, ``invalid_json`` or
    ``upstream_error`` and is what gets persisted as the run's error message.
    """

    def __init__(self, kind: str, url: str, details: Optional[dict] = None):
        self.kind = kind
        self.url = url
        self.details = details or {}
        super().__init__(kind)

    def __str__(self):
        return self.kind

    @property
    def http_status(self) -> int:
        return 504 if self.kind == "timeout" else 502
