"""Exceptions raised while synchronizing notes."""


class PomeraSyncError(Exception):
    """Base exception for note synchronization errors."""
    pass


class SubjectError(PomeraSyncError):
    """An error confined to a single note subject.

    The reconciliation pass reports these and moves on to the next subject.
    """

    def __init__(self, subject: str, message: str):
        super().__init__(message)
        self.subject = subject


class DuplicateSubjectError(SubjectError):
    """The server holds more than one note with the same subject."""

    def __init__(self, subject: str):
        super().__init__(subject, f"More than one note named '{subject}' exists on the server")


class SubjectTooLongError(SubjectError):
    """A local file name does not fit the device's subject budget."""

    def __init__(self, subject: str, max_bytes: int):
        super().__init__(subject, f"'{subject}' is longer than {max_bytes} bytes and cannot be synced, ignoring it")
        self.max_bytes = max_bytes


class InvalidSubjectError(SubjectError):
    """A local file name contains characters that note subjects cannot carry."""

    def __init__(self, subject: str):
        super().__init__(subject, f"'{subject}' contains characters that are not allowed in note names, ignoring it")


class UnsupportedEncodingError(SubjectError):
    """A server message body uses a transfer encoding we cannot decode."""

    def __init__(self, subject: str, encoding: str):
        super().__init__(subject, f"Content-Transfer-Encoding '{encoding}' of '{subject}' is not supported")
        self.encoding = encoding


class MalformedMessageError(SubjectError):
    """A server message could not be parsed (bad body, missing Date...)."""
    pass


class TransportError(PomeraSyncError):
    """The connection to the IMAP server failed."""
    pass
