"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class NormalizationError(DomainException):
    """External record is missing a required field or has a malformed value"""

    def __init__(self, field: str, reason: str, value=None):
        self.field = field
        self.reason = reason
        self.value = value
        super().__init__(f"{field}: {reason}")


class DuplicateError(DomainException):
    """Record was already imported; counted as a skip, never as a failure"""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"duplicate external key {key}")


class MatchAmbiguityWarning(UserWarning):
    """Several ledger candidates cleared the threshold; the tie-break decided"""

    pass


class FetchError(DomainException):
    """Source API returned an error, timed out, or is unreachable"""

    def __init__(self, message: str, retryable: bool = True):
        self.retryable = retryable
        super().__init__(message)


class PersistenceError(DomainException):
    """Ledger write failed. Systemic failures (connection loss) abort the run"""

    def __init__(self, message: str, systemic: bool = False):
        self.systemic = systemic
        super().__init__(message)


class RunNotFoundError(DomainException):
    """No import run exists with the requested id"""

    pass


class RunFinalizedError(DomainException):
    """Import run is finalized and can no longer change"""

    pass


class RunLockedError(DomainException):
    """Another run holds the account's run lock"""

    pass


class RunCancelledError(DomainException):
    """Run was cancelled cooperatively between pages"""

    pass


class UnsupportedEventError(DomainException):
    """Webhook event type the engine does not ingest"""

    def __init__(self, event: str):
        self.event = event
        super().__init__(f"unsupported webhook event {event!r}")
