"""Exception hierarchy for Image Relay.

The API layer maps each family to an HTTP status: input problems become 400
responses, remote-dependency failures become 500 responses carrying a short
summary in ``details``.
"""


class RelayError(Exception):
    """Base class for all Image Relay errors."""

    pass


class InputValidationError(RelayError):
    """User-facing validation error.

    Raised before any side effect takes place. The message is intended to be
    shown to the caller as-is.
    """

    pass


class UploadRejected(InputValidationError):
    """An upload failed type or size validation."""

    pass


class ReplicateError(RelayError):
    """The remote generation API could not be reached or returned an error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class GenerationError(RelayError):
    """A submitted prediction did not produce a usable result."""

    pass


class PredictionFailed(GenerationError):
    """The remote job reached the ``failed`` (or ``canceled``) state."""

    def __init__(self, prediction_id: str, reason: str):
        super().__init__(f"Prediction failed: {reason}")
        self.prediction_id = prediction_id
        self.reason = reason


class PredictionTimedOut(GenerationError):
    """Polling hit the attempt ceiling without a terminal status."""

    def __init__(self, prediction_id: str, attempts: int, last_status: str | None):
        super().__init__(
            f"Prediction timed out after {attempts} attempts. Last status: {last_status}"
        )
        self.prediction_id = prediction_id
        self.attempts = attempts
        self.last_status = last_status


class NoOutputError(GenerationError):
    """The job succeeded but its output normalised to nothing."""

    pass


class ArchiveError(RelayError):
    """A thumbnail could not be downloaded, verified or recorded."""

    pass
