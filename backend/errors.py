# Error taxonomy shared by the service layer and the HTTP handlers in main.py


class SurveyError(Exception):
    """Base class for errors that are reported to the client as JSON."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SurveyError):
    """Missing or malformed input."""
    status_code = 400


class NotFoundError(SurveyError):
    status_code = 404


class ConflictError(SurveyError):
    """Duplicate identifier on insert."""
    status_code = 400


class StorageError(SurveyError):
    status_code = 500


class UpstreamServiceError(SurveyError):
    """Third-party summarization call failed or is not configured."""
    status_code = 503
