class ParleyError(Exception):
    """Base class for session lifecycle errors.

    ``operation`` and ``session_id`` carry enough context for a caller to log
    or display the failure without parsing the message.
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        session_id: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.session_id = session_id

    def __str__(self) -> str:
        prefix = []
        if self.operation:
            prefix.append(self.operation)
        if self.session_id:
            prefix.append(self.session_id)
        if prefix:
            return f"{' '.join(prefix)}: {self.message}"
        return self.message

    def with_context(self, operation: str, session_id: str | None = None) -> "ParleyError":
        """Return a copy of this error, same class, with facade context."""
        wrapped = type(self)(
            self.message,
            operation=operation,
            session_id=session_id or self.session_id,
        )
        return wrapped


class NotFoundError(ParleyError):
    pass


class CorruptRecordError(ParleyError):
    pass


class InvalidBranchPointError(ParleyError):
    pass


class UnsupportedFormatError(ParleyError):
    pass


class StorageIOError(ParleyError):
    pass


class RecoveryStaleError(ParleyError):
    pass


class MergeError(ParleyError):
    pass


class ConfigError(ParleyError):
    pass
