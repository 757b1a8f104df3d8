"""Error taxonomy shared by services and the HTTP layer."""

from __future__ import annotations


class StoryLabError(Exception):
    """Base error. Carries the HTTP status the API layer should answer with."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(StoryLabError):
    """Missing or malformed request fields."""

    status_code = 400
    code = "validation_error"


class NotFoundError(StoryLabError):
    """Missing template, project, recipe or execution."""

    status_code = 404
    code = "not_found"


class AdaptorUnavailableError(StoryLabError):
    """No usable AI backend could be resolved, or the backend call failed."""

    status_code = 500
    code = "adaptor_unavailable"

    def __init__(self, message: str, adaptor_id: str | None = None, model_id: str | None = None):
        super().__init__(message, adaptor_id=adaptor_id, model_id=model_id)
        self.adaptor_id = adaptor_id
        self.model_id = model_id


class ParseError(StoryLabError):
    """AI output was not the JSON shape we expected. Recovered locally."""

    status_code = 502
    code = "parse_error"


class ExecutionError(StoryLabError):
    """A recipe node failed while being invoked."""

    status_code = 500
    code = "execution_error"

    def __init__(self, message: str, node_id: str | None = None, code: str | None = None):
        super().__init__(message, node_id=node_id)
        self.node_id = node_id
        if code:
            self.code = code
