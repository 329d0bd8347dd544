"""
Exceptions for the DriveMerge backend.
"""


class DriveMergeError(Exception):
    """Base exception for DriveMerge errors."""
    pass


class NoAccountsError(DriveMergeError):
    """User has no connected Google Drive accounts."""

    def __init__(self):
        super().__init__("No connected Google Drive accounts")


class NoSpaceError(DriveMergeError):
    """No connected account has enough free space for the file."""

    def __init__(self, file_name: str, file_size: int):
        self.file_name = file_name
        self.file_size = file_size
        super().__init__(f"No account has enough space for {file_name}")


class AccountNotFoundError(DriveMergeError):
    """Account is not connected or not owned by the user."""
    pass


class TransferError(DriveMergeError):
    """A transfer to Google Drive failed. Terminal for the upload."""

    def __init__(self, message: str, original_error: Exception = None):
        self.original_error = original_error
        super().__init__(message)


class FileTooLargeError(DriveMergeError):
    """Upload exceeds MAX_UPLOAD_BYTES."""

    def __init__(self, file_name: str, limit: int):
        self.file_name = file_name
        self.limit = limit
        super().__init__(f"{file_name} exceeds the {limit / (1024**3):.2f} GB upload limit")
