"""First-level delta: keep only top-level entries the remote does not already hold."""

import logging
from pathlib import Path
from typing import List, Optional

from deltadeploy.archive.catalog import EntryChecksumCatalog
from deltadeploy.archive.zipio import (
    DeltaArchive,
    PathLike,
    copy_entry,
    delta_output,
    is_directory,
    open_archive,
    read_entry,
)

log = logging.getLogger(__name__)


def build_delta(
    source_archive: PathLike,
    checksum_catalog: EntryChecksumCatalog,
    output_dir: PathLike,
) -> Optional[DeltaArchive]:
    """
    Write an archive holding the entries of source_archive that are new or changed
    with respect to checksum_catalog. Returns None when the catalog is empty: the
    remote has nothing to diff against and the caller should send the full archive.

    Entries are compared by path (exact string) and CRC-32. Directory entries are
    always kept so the remote side sees the full hierarchy. The source archive is
    never modified; on failure no output file is left in output_dir.
    """
    source = Path(source_archive)
    if not checksum_catalog:
        log.info("No existing checksums for %s, delta not possible", source.name)
        return None

    kept: List[str] = []
    omitted = 0
    with open_archive(source) as zf:
        with delta_output(source, output_dir, "delta") as (path, out):
            for info in zf.infolist():
                if not is_directory(info) and checksum_catalog.is_current(info.filename, info.CRC):
                    log.debug("Unchanged: %s crc=%08x", info.filename, info.CRC)
                    omitted += 1
                    continue
                data = b"" if is_directory(info) else read_entry(zf, info, source)
                copy_entry(out, info, data)
                kept.append(info.filename)
    log.info(
        "Delta archive %s: %d entries kept, %d unchanged omitted (source %s)",
        path.name, len(kept), omitted, source.name,
    )
    return DeltaArchive(path=path, source=source, entries=tuple(kept), omitted=omitted)
