# Error taxonomy shared by the store, the access resolver and the API layer
from __future__ import annotations


class SurveyServiceError(Exception):
    """Base error; `status_code` is what the API layer renders."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(SurveyServiceError):
    status_code = 404


class Forbidden(SurveyServiceError):
    status_code = 403


class InvalidRequest(SurveyServiceError):
    status_code = 400


class Unavailable(SurveyServiceError):
    """The store could not be reached or timed out. Never retried here."""

    status_code = 503
