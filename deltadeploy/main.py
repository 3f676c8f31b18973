"""Entry point: deploy archives, inspect catalogs, manage credentials and config."""

import argparse
import getpass
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import httpx

from deltadeploy import __version__
from deltadeploy import config as app_config
from deltadeploy.api.client import DeployAPI, DeployArgs
from deltadeploy.archive.jardelta import jar_hashes
from deltadeploy.auth.credentials import CredentialsStore
from deltadeploy.deploy.orchestrator import deploy_archive
from deltadeploy.errors import DeltaDeployError, UsageError

log = logging.getLogger("deltadeploy.main")


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging to a file in the config dir (DEBUG) and to stderr (INFO, or DEBUG if verbose)."""
    log_file = app_config.get_log_path()
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root = logging.getLogger("deltadeploy")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    try:
        fh = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        fh = None
        sys.stderr.write(f"Not logging to {log_file}: {e}\n")
    if fh is not None:
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        root.addHandler(fh)
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(fmt)
    root.addHandler(ch)
    root.debug("Logging to %s", log_file)


def _parse_pairs(pairs: Optional[List[str]], option: str) -> Dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    out: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise UsageError(f"{option} expects KEY=VALUE, got {pair!r}")
        out[key.strip()] = value
    return out


def _archive_type(path: Path, explicit: Optional[str]) -> str:
    """Archive kind from --type, else from the file suffix."""
    kind = (explicit or path.suffix.lstrip(".")).lower()
    if kind not in app_config.ARCHIVE_KINDS:
        raise UsageError(
            f"Cannot tell archive type of {path.name}; use --type ({', '.join(app_config.ARCHIVE_KINDS)})"
        )
    return kind


def _progress_printer():
    """Upload progress on stderr, one line per 10%."""
    last = [-1]

    def on_progress(sent: int, total: int) -> None:
        if total <= 0:
            return
        step = min(10, sent * 10 // total)
        if step != last[0]:
            last[0] = step
            sys.stderr.write(f"uploaded {step * 10}% ({sent}/{total} bytes)\n")

    return on_progress


def _api_with_credentials() -> DeployAPI:
    stored = CredentialsStore().get_stored()
    if not stored:
        raise UsageError("No API credentials stored; run: deltadeploy login")
    api_key, secret = stored
    return DeployAPI(api_key=api_key, secret=secret)


def cmd_deploy(ns: argparse.Namespace) -> int:
    archive = Path(ns.archive)
    if not archive.is_file():
        raise UsageError(f"Archive not found: {archive}")
    src = Path(ns.src) if ns.src else None
    if src is not None and not src.is_file():
        raise UsageError(f"Source archive not found: {src}")
    delta = app_config.get_delta_enabled() if ns.delta is None else ns.delta
    args = DeployArgs(
        app_id=ns.app_id,
        archive=archive,
        archive_type=_archive_type(archive, ns.type),
        environment=ns.environment,
        description=ns.description,
        delta_deploy=delta,
        src_file=src,
        create=ns.create,
        parameters=_parse_pairs(ns.param, "--param"),
        variables=_parse_pairs(ns.var, "--var"),
        progress=None if ns.quiet else _progress_printer(),
    )
    work_dir = Path(ns.work_dir) if ns.work_dir else app_config.get_work_dir()
    response = deploy_archive(
        _api_with_credentials(),
        args,
        output_dir=work_dir,
        delta_kinds=app_config.get_delta_archive_kinds(),
    )
    log.info("Deployed %s to %s", archive.name, ns.app_id)
    print(json.dumps(response, indent=2, sort_keys=True))
    return 0


def cmd_checksums(ns: argparse.Namespace) -> int:
    checksums = _api_with_credentials().check_sums(ns.app_id)
    print(json.dumps(checksums, indent=2, sort_keys=True))
    return 0


def cmd_jar_hashes(ns: argparse.Namespace) -> int:
    print(json.dumps(jar_hashes(Path(ns.archive)), indent=2, sort_keys=True))
    return 0


def cmd_login(ns: argparse.Namespace) -> int:
    api_key = ns.api_key or input("API key: ").strip()
    secret = ns.secret or getpass.getpass("API secret: ").strip()
    if not api_key or not secret:
        raise UsageError("API key and secret are required")
    CredentialsStore().set_stored(api_key, secret)
    log.info("Stored API credentials for key %s", api_key)
    return 0


def cmd_logout(ns: argparse.Namespace) -> int:
    CredentialsStore().clear_stored()
    log.info("Removed stored API credentials")
    return 0


def cmd_config(ns: argparse.Namespace) -> int:
    if ns.api_url is not None:
        app_config.set_api_url(ns.api_url)
    if ns.delta is not None:
        app_config.set_delta_enabled(ns.delta)
    if ns.delta_kinds is not None:
        try:
            app_config.set_delta_archive_kinds(ns.delta_kinds.split(","))
        except ValueError as e:
            raise UsageError(str(e)) from e
    if ns.work_dir is not None:
        app_config.set_work_dir(Path(ns.work_dir) if ns.work_dir else None)
    work_dir = app_config.get_work_dir()
    print(json.dumps({
        "api_url": app_config.get_api_url(),
        "delta_enabled": app_config.get_delta_enabled(),
        "delta_archive_kinds": app_config.get_delta_archive_kinds(),
        "work_dir": str(work_dir) if work_dir else None,
        "config_path": str(app_config.get_config_path()),
    }, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deltadeploy", description="Deploy application archives, uploading only what changed.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output on stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy", help="deploy an archive")
    p.add_argument("archive", help="WAR/EAR/JAR/ZIP file")
    p.add_argument("-a", "--app-id", required=True, help="application id (account/app)")
    p.add_argument("-t", "--type", choices=app_config.ARCHIVE_KINDS, help="archive type (default: file suffix)")
    p.add_argument("-e", "--environment")
    p.add_argument("-d", "--description")
    p.add_argument("--src", help="source archive uploaded alongside")
    p.add_argument("--create", action="store_true", help="create the application if missing")
    p.add_argument("-P", "--param", action="append", metavar="KEY=VALUE", help="application parameter")
    p.add_argument("-V", "--var", action="append", metavar="KEY=VALUE", help="runtime variable")
    p.add_argument("--work-dir", help="directory for delta archives")
    p.add_argument("-q", "--quiet", action="store_true", help="no upload progress")
    delta = p.add_mutually_exclusive_group()
    delta.add_argument("--delta", dest="delta", action="store_true", default=None, help="upload a delta archive")
    delta.add_argument("--no-delta", dest="delta", action="store_false", help="upload the full archive")
    p.set_defaults(func=cmd_deploy)

    p = sub.add_parser("checksums", help="print the remote checksum catalog")
    p.add_argument("-a", "--app-id", required=True)
    p.set_defaults(func=cmd_checksums)

    p = sub.add_parser("jar-hashes", help="print the nested jar entry hashes of a local archive")
    p.add_argument("archive")
    p.set_defaults(func=cmd_jar_hashes)

    p = sub.add_parser("login", help="store API key and secret in the keyring")
    p.add_argument("--api-key")
    p.add_argument("--secret")
    p.set_defaults(func=cmd_login)

    p = sub.add_parser("logout", help="remove stored API credentials")
    p.set_defaults(func=cmd_logout)

    p = sub.add_parser("config", help="show or change settings")
    p.add_argument("--api-url")
    delta = p.add_mutually_exclusive_group()
    delta.add_argument("--delta", dest="delta", action="store_true", default=None)
    delta.add_argument("--no-delta", dest="delta", action="store_false")
    p.add_argument("--delta-kinds", help="comma-separated archive kinds to diff, e.g. war,jar")
    p.add_argument("--work-dir", help="directory for delta archives (empty string: next to the archive)")
    p.set_defaults(func=cmd_config)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Run the deltadeploy command line."""
    parser = build_parser()
    ns = parser.parse_args(argv)
    _setup_logging(ns.verbose)
    try:
        return ns.func(ns)
    except UsageError as e:
        log.error("%s", e)
        return 2
    except DeltaDeployError as e:
        log.error("%s: %s", type(e).__name__, e)
        return 1
    except httpx.HTTPStatusError as e:
        log.error("API error %s: %s", e.response.status_code, e.response.text[:500])
        return 1
    except httpx.HTTPError as e:
        log.error("Connection error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
