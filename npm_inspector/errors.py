# npm_inspector/errors.py


class ErrorKind:
    PACKAGE_NOT_FOUND = "PACKAGE_NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"
    VERSION_RESOLUTION_ERROR = "VERSION_RESOLUTION_ERROR"
    AI_ERROR = "AI_ERROR"
    ANALYSIS_ERROR = "ANALYSIS_ERROR"


class InspectorError(RuntimeError):
    """Raised when a registry, advisory or summary call fails terminally.

    ``kind`` is one of the ``ErrorKind`` tags; ``message`` is meant for the
    person running the analysis.
    """

    def __init__(self, kind: str, message: str, status_code: int | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"
