"""Error types raised inside the import pipeline."""


class ArchiveImportError(Exception):
    """Base class for importer errors."""


class MalformedInput(ArchiveImportError):
    """A binary container could not be decoded."""


class UploadFailure(ArchiveImportError):
    """The catalog store rejected a file."""


class FatalStageFailure(ArchiveImportError):
    """An archive-level failure that ends the job."""


class InvalidTransition(ArchiveImportError):
    """A job was asked to move backwards through its stages."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move job from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested
