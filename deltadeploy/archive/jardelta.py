"""Second-level delta: prune unchanged entries inside jars nested in the archive.

Library jars bundled in a deployment unit change far less often than the
application's own classes. Hashing their contents lets the remote skip jars (or
parts of jars) it already holds even when the outer entry checksum differs.
"""

import hashlib
import io
import logging
import zipfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from deltadeploy.archive.catalog import NestedJarHashCatalog, nested_key
from deltadeploy.archive.zipio import (
    DeltaArchive,
    PathLike,
    copy_entry,
    delta_output,
    is_directory,
    open_archive,
    open_nested,
    read_entry,
)

log = logging.getLogger(__name__)

JAR_SUFFIX = ".jar"


def is_jar(info: zipfile.ZipInfo) -> bool:
    """True for top-level entries treated as nested jars (name ends in .jar, any case)."""
    return not is_directory(info) and info.filename.lower().endswith(JAR_SUFFIX)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def jar_hashes(archive: PathLike) -> Dict[str, str]:
    """
    Hash every file inside every nested jar of archive.
    Returns {"<jar path>/<inner path>": sha256 hex}; this is what the remote is sent
    so it can answer with the entries it already holds.
    """
    source = Path(archive)
    hashes: Dict[str, str] = {}
    with open_archive(source) as zf:
        for info in zf.infolist():
            if not is_jar(info):
                continue
            data = read_entry(zf, info, source)
            with open_nested(data, source, info.filename) as jar:
                for inner in jar.infolist():
                    if is_directory(inner):
                        continue
                    body = read_entry(jar, inner, source, container=info.filename)
                    hashes[nested_key(info.filename, inner.filename)] = content_hash(body)
    log.debug("Computed %d nested jar entry hashes for %s", len(hashes), source.name)
    return hashes


def _prune_jar(
    data: bytes,
    jar_name: str,
    source: Path,
    catalog: NestedJarHashCatalog,
) -> Tuple[bytes, int]:
    """Return (jar bytes without entries the remote holds, number of entries pruned)."""
    buf = io.BytesIO()
    pruned = 0
    with open_nested(data, source, jar_name) as jar, zipfile.ZipFile(buf, "w") as out:
        for inner in jar.infolist():
            if is_directory(inner):
                copy_entry(out, inner, b"")
                continue
            body = read_entry(jar, inner, source, container=jar_name)
            if catalog.is_current(nested_key(jar_name, inner.filename), content_hash(body)):
                pruned += 1
                continue
            copy_entry(out, inner, body)
    return buf.getvalue(), pruned


def build_nested_delta(
    source_archive: PathLike,
    jar_hash_catalog: NestedJarHashCatalog,
    output_dir: PathLike,
) -> Optional[DeltaArchive]:
    """
    Write a copy of source_archive in which every nested jar holds only the inner
    entries that are new or changed with respect to jar_hash_catalog. Other
    top-level entries are copied through unchanged. Returns None when the catalog
    is empty, meaning the caller keeps the archive it already has.
    """
    source = Path(source_archive)
    if not jar_hash_catalog:
        log.info("No existing jar hashes for %s, nested delta not possible", source.name)
        return None

    kept: List[str] = []
    pruned_total = 0
    pruned_jars = 0
    with open_archive(source) as zf:
        with delta_output(source, output_dir, "jardelta") as (path, out):
            for info in zf.infolist():
                if is_directory(info):
                    copy_entry(out, info, b"")
                else:
                    data = read_entry(zf, info, source)
                    if is_jar(info):
                        pruned_data, pruned = _prune_jar(data, info.filename, source, jar_hash_catalog)
                        if pruned:
                            log.debug("Jar %s: %d unchanged entries pruned", info.filename, pruned)
                            pruned_total += pruned
                            pruned_jars += 1
                            data = pruned_data
                    copy_entry(out, info, data)
                kept.append(info.filename)
    log.info(
        "Nested delta archive %s: %d entries pruned from %d jars (source %s)",
        path.name, pruned_total, pruned_jars, source.name,
    )
    return DeltaArchive(path=path, source=source, entries=tuple(kept), omitted=pruned_total)
