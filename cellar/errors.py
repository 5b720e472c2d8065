"""
Error taxonomy for cellar.

Every error carries the pipeline stage it failed in so callers can report
``<stage> failed: <message>`` without inspecting the exception type.
"""


class CellarError(Exception):
    """Base exception for all installer errors."""

    stage = "cellar"

    def __init__(self, message: str, stage: str = None):
        super().__init__(message)
        if stage:
            self.stage = stage

    def __str__(self):
        return f"{self.stage} failed: {super().__str__()}"


class ManifestError(CellarError):
    """Formula is missing required fields or declares unsafe paths."""
    stage = "manifest"


class NetworkError(CellarError):
    """Source archive could not be downloaded."""
    stage = "fetch"


class IntegrityError(CellarError):
    """Downloaded archive does not match the declared SHA-256 digest."""
    stage = "verify"


class FormatError(CellarError):
    """Archive is corrupt, of an unknown type, or unsafe to unpack."""
    stage = "extract"


class InstallIOError(CellarError):
    """Filesystem write or permission failure while installing."""
    stage = "install"


class NotFoundError(CellarError):
    """Requested package or version is not installed."""
    stage = "uninstall"
