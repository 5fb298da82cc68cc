# src/engine/errors.py
"""
Error taxonomy for the scan orchestrator. The HTTP layer maps these onto status codes.
"""


class ScanServiceError(Exception):
    pass


class ValidationError(ScanServiceError):
    """Malformed target URL or out-of-range query parameters."""


class NotFoundError(ScanServiceError):
    pass


class ConflictError(ScanServiceError):
    """Dedup race lost at the store, or a state change that is no longer possible."""


class InvalidTransitionError(ConflictError):
    pass


class ScanExecutionError(ScanServiceError):
    """Raised by scanners. Converted into a failed scan, never returned to a caller."""


class PersistenceError(ScanServiceError):
    pass
