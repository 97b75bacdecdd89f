"""Error taxonomy for the harvester.

Every error carries a short ``kind`` string that is reported verbatim in
``run-error`` progress events and API error bodies.
"""

from __future__ import annotations


class HarvestError(Exception):
    """Base class for all harvester errors."""

    kind: str = "internal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MailConnectionError(HarvestError, ConnectionError):
    """The mail session could not be established or authenticated."""

    kind = "connection"


class FolderNotFoundError(HarvestError):
    """The requested folder does not exist or cannot be selected."""

    kind = "folder_not_found"

    def __init__(self, folder: str, detail: str = "") -> None:
        message = f'Failed to open folder "{folder}"'
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.folder = folder


class ProtocolError(HarvestError):
    """The server returned a malformed or unexpected response."""

    kind = "protocol"


class ArchiveBuildError(HarvestError):
    """Finalizing the compressed archive failed."""

    kind = "archive"


class StorageError(HarvestError):
    """A working-store read, write, or delete failed."""

    kind = "storage"


class ProviderUnavailableError(HarvestError):
    """An unknown or not-yet-supported provider preset was requested."""

    kind = "provider"


class JobConflictError(HarvestError):
    """The session already has a job in flight."""

    kind = "conflict"


class RunCancelled(HarvestError):
    """Raised inside the pipeline when cancellation is observed."""

    kind = "cancelled"
