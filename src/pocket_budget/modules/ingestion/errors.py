from __future__ import annotations


class IngestionError(RuntimeError):
    pass


class IngestionValidationError(IngestionError):
    """Bad input the user has to correct; never retried automatically."""


class ImageRejected(IngestionValidationError):
    pass


class NothingSelected(IngestionValidationError):
    pass


class ExtractionError(IngestionError):
    """A single image could not be turned into candidates."""


class NetworkError(ExtractionError):
    pass


class ApiError(ExtractionError):
    def __init__(self, message: str, *, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(ExtractionError):
    pass


class ExtractionNotConfigured(ExtractionError):
    pass


class InvalidTransition(IngestionError):
    def __init__(self, state: str, event: str):
        super().__init__(f"Cannot handle {event} in state {state}")
        self.state = state
        self.event = event


class CommitError(IngestionError):
    def __init__(self, message: str, *, persisted_ids: tuple[str, ...]):
        super().__init__(message)
        self.persisted_ids = persisted_ids
