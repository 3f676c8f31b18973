"""Zip helpers shared by the delta builders: reading, verbatim copy, temp output."""

import io
import logging
import os
import tempfile
import zipfile
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Tuple, Union

from deltadeploy.errors import IOFailure, MalformedArchive

log = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Raised by zipfile for corrupt members: CRC mismatch and bad headers (BadZipFile),
# broken deflate streams (zlib.error), truncated data (EOFError).
_CORRUPT_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError)


@dataclass(frozen=True)
class DeltaArchive:
    """A synthesized archive holding a subset of its source's entries."""

    path: Path
    source: Path
    entries: Tuple[str, ...] = ()
    omitted: int = 0
    supersedes: Optional[Path] = None

    @property
    def is_superseding(self) -> bool:
        return self.supersedes is not None


def is_directory(info: zipfile.ZipInfo) -> bool:
    return info.filename.endswith("/")


@contextmanager
def open_archive(path: PathLike) -> Iterator[zipfile.ZipFile]:
    """Open a zip for reading, mapping failures to IOFailure / MalformedArchive."""
    path = Path(path)
    try:
        zf = zipfile.ZipFile(path, "r")
    except _CORRUPT_ERRORS as e:
        raise MalformedArchive(f"Not a valid archive: {path}: {e}", path=path) from e
    except OSError as e:
        raise IOFailure(f"Cannot read archive {path}: {e}", path=path) from e
    with zf:
        yield zf


def open_nested(data: bytes, outer: Path, name: str) -> zipfile.ZipFile:
    """Open a jar held in memory (an entry of outer)."""
    try:
        return zipfile.ZipFile(io.BytesIO(data), "r")
    except _CORRUPT_ERRORS as e:
        raise MalformedArchive(f"Nested jar {name} in {outer} is not a valid archive: {e}", path=outer, entry=name) from e


def read_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, archive: Path, container: Optional[str] = None) -> bytes:
    """Read an entry's bytes; the CRC is verified by zipfile on the way."""
    label = f"{container}/{info.filename}" if container else info.filename
    try:
        return zf.read(info)
    except _CORRUPT_ERRORS as e:
        raise MalformedArchive(f"Corrupt entry {label} in {archive}: {e}", path=archive, entry=label) from e
    except NotImplementedError as e:
        # Unsupported compression method
        raise MalformedArchive(f"Cannot decode entry {label} in {archive}: {e}", path=archive, entry=label) from e
    except OSError as e:
        raise IOFailure(f"Cannot read entry {label} in {archive}: {e}", path=archive) from e


def clone_info(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    """Copy of an entry's metadata (name, timestamp, method, attributes) for writing."""
    out = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    out.compress_type = info.compress_type
    out.comment = info.comment
    out.extra = info.extra
    out.create_system = info.create_system
    out.external_attr = info.external_attr
    return out


def copy_entry(out: zipfile.ZipFile, info: zipfile.ZipInfo, data: bytes) -> None:
    """Write an entry to out with the same name, method, timestamp and bytes."""
    out.writestr(clone_info(info), data)


@contextmanager
def delta_output(source: Path, output_dir: PathLike, tag: str) -> Iterator[Tuple[Path, zipfile.ZipFile]]:
    """
    Create a uniquely named archive in output_dir and yield (path, writer).
    The file is removed if the body raises, so no partial output is left behind.
    """
    output_dir = Path(output_dir)
    try:
        fd, name = tempfile.mkstemp(prefix=f"{source.stem}-{tag}-", suffix=source.suffix or ".zip", dir=output_dir)
    except OSError as e:
        raise IOFailure(f"Cannot create delta archive in {output_dir}: {e}", path=output_dir) from e
    os.close(fd)
    path = Path(name)
    try:
        with zipfile.ZipFile(path, "w") as out:
            yield path, out
    except OSError as e:
        log.debug("Removing partial delta archive %s", path)
        path.unlink(missing_ok=True)
        raise IOFailure(f"Cannot write delta archive {path}: {e}", path=path) from e
    except BaseException:
        log.debug("Removing partial delta archive %s", path)
        path.unlink(missing_ok=True)
        raise
