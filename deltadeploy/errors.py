"""Error kinds raised by the delta engine and the CLI."""

from pathlib import Path
from typing import Optional, Union


class DeltaDeployError(Exception):
    """Base class for all deltadeploy errors."""


class IOFailure(DeltaDeployError):
    """Archive could not be read or the delta could not be written."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None


class MalformedArchive(DeltaDeployError):
    """Structural corruption in a source archive or one of its nested jars."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None, entry: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = Path(path) if path is not None else None
        self.entry = entry


class CatalogFetchFailure(DeltaDeployError):
    """The remote did not return a catalog. Never the same as an empty catalog."""

    def __init__(self, message: str, catalog: str) -> None:
        super().__init__(message)
        self.catalog = catalog


class UsageError(DeltaDeployError):
    """Bad command-line input."""


class RemoteError(DeltaDeployError):
    """The remote API answered with an error document."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
