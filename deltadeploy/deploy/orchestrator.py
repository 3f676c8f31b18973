"""Delta payload preparation: sequence both diff stages, pick the payload, own cleanup.

Stages run as an explicit state sequence:

    NoDelta -> Stage1Candidate -> Stage2Candidate
    NoDelta ----------------------^

Every delta archive is registered in a DeltaFiles registry the moment it is
created. A stage-2 delta that replaces a stage-1 delta deletes the stage-1 file
immediately. Whatever is still registered is deleted once the payload has been
consumed, or as soon as any stage fails. The local archive is never deleted.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Collection, Dict, Iterator, List, Mapping, Optional, Tuple, TypeVar, Union

from deltadeploy.api.client import DeployAPI, DeployArgs
from deltadeploy.archive.catalog import EntryChecksumCatalog, NestedJarHashCatalog
from deltadeploy.archive.delta import build_delta
from deltadeploy.archive.jardelta import build_nested_delta, jar_hashes
from deltadeploy.archive.zipio import DeltaArchive, PathLike
from deltadeploy.config import ARCHIVE_KINDS, DEFAULT_DELTA_ARCHIVE_KINDS
from deltadeploy.errors import CatalogFetchFailure, UsageError

log = logging.getLogger(__name__)

T = TypeVar("T")

# () -> {path: crc}
ChecksumFetcher = Callable[[], Mapping[str, Any]]
# (local nested-entry hashes) -> {nested key: hash} held by the remote
JarHashFetcher = Callable[[Dict[str, str]], Mapping[str, str]]


@dataclass(frozen=True)
class NoDelta:
    """Payload is still the local archive."""

    archive: Path


@dataclass(frozen=True)
class Stage1Candidate:
    """Top-level delta built; nested jars not yet pruned."""

    original: Path
    delta: DeltaArchive


@dataclass(frozen=True)
class Stage2Candidate:
    """Nested-jar delta built, from the local archive or from a stage-1 delta."""

    original: Path
    delta: DeltaArchive


CandidateState = Union[NoDelta, Stage1Candidate, Stage2Candidate]


def candidate_path(state: CandidateState) -> Path:
    """Archive the state currently proposes for upload."""
    if isinstance(state, NoDelta):
        return state.archive
    if isinstance(state, (Stage1Candidate, Stage2Candidate)):
        return state.delta.path
    raise TypeError(f"Unknown candidate state: {state!r}")


class DeltaFiles:
    """Registry of synthesized delta archives; each is deleted exactly once."""

    def __init__(self) -> None:
        self._paths: List[Path] = []

    @property
    def paths(self) -> Tuple[Path, ...]:
        return tuple(self._paths)

    def register(self, path: Path) -> None:
        log.debug("Registered delta archive %s", path)
        self._paths.append(Path(path))

    def discard(self, path: Path) -> None:
        """Delete one registered file now and stop tracking it."""
        path = Path(path)
        if path not in self._paths:
            raise ValueError(f"Not a registered delta archive: {path}")
        self._paths.remove(path)
        _delete(path)

    def release(self) -> None:
        """Delete every registered file. Safe to call more than once."""
        while self._paths:
            _delete(self._paths.pop())


def _delete(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
        log.debug("Deleted delta archive %s", path)
    except OSError as e:
        log.warning("Could not delete delta archive %s: %s", path, e)


def to_stage1(state: CandidateState, delta: DeltaArchive, files: DeltaFiles) -> Stage1Candidate:
    """NoDelta -> Stage1Candidate; the delta is registered for cleanup."""
    if isinstance(state, NoDelta):
        files.register(delta.path)
        return Stage1Candidate(original=state.archive, delta=delta)
    raise ValueError(f"Cannot enter stage 1 from {type(state).__name__}")


def to_stage2(state: CandidateState, delta: DeltaArchive, files: DeltaFiles) -> Stage2Candidate:
    """
    NoDelta or Stage1Candidate -> Stage2Candidate. A superseded stage-1 delta is
    deleted and de-registered here; the new delta is registered.
    """
    if isinstance(state, NoDelta):
        files.register(delta.path)
        return Stage2Candidate(original=state.archive, delta=delta)
    if isinstance(state, Stage1Candidate):
        files.discard(state.delta.path)
        files.register(delta.path)
        return Stage2Candidate(original=state.original, delta=replace(delta, supersedes=state.delta.path))
    raise ValueError(f"Cannot enter stage 2 from {type(state).__name__}")


@dataclass
class PreparedPayload:
    """
    The archive to upload plus the delta files to delete once it has been consumed.
    Use as a context manager (or call release()) so the files are always deleted.
    """

    state: CandidateState
    files: DeltaFiles = field(default_factory=DeltaFiles)

    @property
    def path(self) -> Path:
        return candidate_path(self.state)

    @property
    def is_delta(self) -> bool:
        return not isinstance(self.state, NoDelta)

    @property
    def cleanup_list(self) -> List[Path]:
        return list(self.files.paths)

    def release(self) -> None:
        self.files.release()

    def __enter__(self) -> "PreparedPayload":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _fetch(catalog: str, factory: Callable[[Mapping], T], fetcher: Callable[..., Any], *args: Any) -> T:
    """
    Call a catalog fetcher and wrap its answer with factory. Any failure, no answer,
    or an answer that is not a valid catalog is a CatalogFetchFailure.
    """
    try:
        result = fetcher(*args)
    except CatalogFetchFailure:
        raise
    except Exception as e:
        raise CatalogFetchFailure(f"Could not fetch {catalog}: {e}", catalog=catalog) from e
    if not isinstance(result, Mapping):
        raise CatalogFetchFailure(f"No valid {catalog} returned: {result!r}", catalog=catalog)
    try:
        return factory(result)
    except (TypeError, ValueError) as e:
        raise CatalogFetchFailure(f"Invalid {catalog}: {e}", catalog=catalog) from e


@contextmanager
def _release_on_error(files: DeltaFiles) -> Iterator[DeltaFiles]:
    """Release registered delta files if the block raises; keep them otherwise."""
    try:
        yield files
    except BaseException:
        log.debug("Payload preparation failed, releasing %d delta archive(s)", len(files.paths))
        files.release()
        raise


def supports_delta(archive_kind: str, delta_kinds: Collection[str] = DEFAULT_DELTA_ARCHIVE_KINDS) -> bool:
    return archive_kind.lower() in {k.lower() for k in delta_kinds}


def prepare_payload(
    local_archive: PathLike,
    checksum_fetcher: ChecksumFetcher,
    jar_hash_fetcher: JarHashFetcher,
    delta_enabled: bool,
    archive_kind: str,
    output_dir: Optional[PathLike] = None,
    delta_kinds: Collection[str] = DEFAULT_DELTA_ARCHIVE_KINDS,
) -> PreparedPayload:
    """
    Build the smallest payload for local_archive.

    With delta disabled, or for an archive kind that is not diffed, the payload is
    the local archive and nothing is fetched. Otherwise the checksum catalog drives
    a top-level delta, then the jar-hash catalog (fetched with the hashes of the
    current candidate) drives a nested-jar delta. Stage 2 always runs, even when
    stage 1 found nothing to change. Delta archives go to output_dir (default: the
    archive's directory).

    On any failure every delta archive created so far is deleted before the error
    propagates. On success the caller owns the returned payload and must release it.
    """
    archive = Path(local_archive)
    state: CandidateState = NoDelta(archive=archive)
    if not delta_enabled:
        log.info("Delta deployment disabled, uploading full archive %s", archive.name)
        return PreparedPayload(state=state)
    if not supports_delta(archive_kind, delta_kinds):
        log.info("Archive kind %s does not support delta deployment, uploading full archive", archive_kind)
        return PreparedPayload(state=state)
    out_dir = Path(output_dir) if output_dir is not None else archive.parent

    files = DeltaFiles()
    with _release_on_error(files):
        log.info("Get existing checksums")
        checksums = _fetch("checksum catalog", EntryChecksumCatalog, checksum_fetcher)
        log.debug("Checksum catalog: %d entries", len(checksums))
        stage1 = build_delta(archive, checksums, out_dir)
        if stage1 is not None:
            state = to_stage1(state, stage1, files)
        else:
            log.info("No existing checksums, keeping full archive for stage 2")

        log.info("Get existing jar hashes")
        current = candidate_path(state)
        hashes = _fetch("jar hash catalog", NestedJarHashCatalog, jar_hash_fetcher, jar_hashes(current))
        log.debug("Jar hash catalog: %d entries", len(hashes))
        stage2 = build_nested_delta(current, hashes, out_dir)
        if stage2 is not None:
            state = to_stage2(state, stage2, files)
        else:
            log.info("No existing jars")

    prepared = PreparedPayload(state=state, files=files)
    if prepared.is_delta:
        log.info("Prepared delta archive %s", prepared.path.name)
    return prepared


class DeltaOrchestrator:
    """Prepares and deploys payloads against one DeployAPI."""

    def __init__(
        self,
        api: DeployAPI,
        output_dir: Optional[PathLike] = None,
        delta_kinds: Collection[str] = DEFAULT_DELTA_ARCHIVE_KINDS,
    ) -> None:
        self._api = api
        self._output_dir = output_dir
        self._delta_kinds = tuple(delta_kinds)

    def prepare(self, args: DeployArgs) -> PreparedPayload:
        """Prepare the payload for args; fetchers are bound to args.app_id."""
        if args.archive_type not in ARCHIVE_KINDS:
            raise UsageError(f"Unknown archive type {args.archive_type!r}; expected one of {', '.join(ARCHIVE_KINDS)}")
        return prepare_payload(
            args.archive,
            lambda: self._api.check_sums(args.app_id),
            lambda hashes: self._api.jar_hashes(args.app_id, hashes),
            args.delta_deploy,
            args.archive_type,
            output_dir=self._output_dir,
            delta_kinds=self._delta_kinds,
        )

    def deploy(self, args: DeployArgs) -> Dict[str, Any]:
        """Prepare, upload, and always delete the delta archives afterwards."""
        with self.prepare(args) as prepared:
            if prepared.is_delta:
                log.info("Uploading delta archive: %s", prepared.path)
            return self._api.deploy_archive(prepared.path, args, prepared.is_delta)


def deploy_archive(
    api: DeployAPI,
    args: DeployArgs,
    output_dir: Optional[PathLike] = None,
    delta_kinds: Collection[str] = DEFAULT_DELTA_ARCHIVE_KINDS,
) -> Dict[str, Any]:
    """Deploy args.archive through api, uploading a delta archive when possible."""
    return DeltaOrchestrator(api, output_dir=output_dir, delta_kinds=delta_kinds).deploy(args)
