"""
Error taxonomy for the batch engine.

Each error carries the HTTP status the router reports it with. Per-item
errors (analysis, generation) are absorbed by the item processor and never
reach the caller; only validation, lookup, conflict and infrastructure
errors surface from workflow-level operations.
"""


class PhotoBatchError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PhotoBatchError):
    """Malformed input, rejected before any write."""
    status_code = 400


class NotFoundError(PhotoBatchError):
    status_code = 404


class ConflictError(PhotoBatchError):
    """The workflow is already being mutated by another operation."""
    status_code = 409


class AnalysisFailure(PhotoBatchError):
    """The analysis capability could not classify the product or produce prompts."""
    status_code = 502


class AnalysisMismatchError(AnalysisFailure):
    def __init__(self, expected: int, received: int):
        super().__init__(f"Generated {received} prompts but expected {expected}")
        self.expected = expected
        self.received = received


class GenerationFailure(PhotoBatchError):
    """One prompt slot could not be turned into an image."""
    status_code = 502


class InfrastructureError(PhotoBatchError):
    """Job store or gallery unavailable."""
    status_code = 500
