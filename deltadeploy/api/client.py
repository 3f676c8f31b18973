"""HTTP client for the deployment API: checksum catalogs and archive upload."""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Optional

import httpx

from deltadeploy.config import get_api_url
from deltadeploy.errors import RemoteError

log = logging.getLogger(__name__)

API_VERSION = "1.0"

# Upload progress callback: (bytes_sent, total_bytes)
UploadProgress = Callable[[int, int], None]

# The deploy call may run for a long time on the server side
DEPLOY_EXPIRY_SECONDS = 4 * 60 * 60


@dataclass
class DeployArgs:
    """Metadata sent with a deployment."""

    app_id: str
    archive: Path
    archive_type: str = "war"
    environment: Optional[str] = None
    description: Optional[str] = None
    delta_deploy: bool = True
    src_file: Optional[Path] = None
    create: bool = False
    parameters: Dict[str, str] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    progress: Optional[UploadProgress] = None


def sign(params: Dict[str, str], secret: str) -> str:
    """Request signature: MD5 hex of the sorted key+value pairs followed by the secret."""
    to_sign = "".join(f"{k}{params[k]}" for k in sorted(params))
    return hashlib.md5((to_sign + secret).encode("utf-8")).hexdigest()


class _ProgressReader:
    """File wrapper that reports bytes read so far to an UploadProgress callback."""

    def __init__(self, fh: BinaryIO, counter: Dict[str, int], total: int, callback: UploadProgress) -> None:
        self._fh = fh
        self._counter = counter
        self._total = total
        self._callback = callback

    def read(self, size: int = -1) -> bytes:
        chunk = self._fh.read(size)
        if chunk:
            self._counter["sent"] += len(chunk)
            self._callback(self._counter["sent"], self._total)
        return chunk

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._fh.seek(offset, whence)

    def tell(self) -> int:
        return self._fh.tell()

    def fileno(self) -> int:
        return self._fh.fileno()


class DeployAPI:
    """
    Client for the deployment API: checksum and jar-hash catalogs, archive deploy.
    Every request is signed with the API key and secret.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        secret: Optional[str] = None,
    ) -> None:
        self._base_url = (base_url or get_api_url()).rstrip("/")
        self._api_key = api_key
        self._secret = secret
        log.debug("API client base_url=%s", self._base_url)

    def set_credentials(self, api_key: Optional[str], secret: Optional[str]) -> None:
        """Set or clear the API key and secret."""
        self._api_key = api_key
        self._secret = secret

    def set_base_url(self, base_url: str) -> None:
        self._base_url = (base_url or "").rstrip("/")
        log.debug("API client base_url updated to %s", self._base_url)

    @property
    def _api_url(self) -> str:
        return f"{self._base_url}/api"

    def _signed(self, action: str, params: Dict[str, str]) -> Dict[str, str]:
        """Add the common call parameters and the signature."""
        if not self._api_key or not self._secret:
            raise RemoteError("No API key/secret configured (run: deltadeploy login)", code="NoCredentials")
        out = {
            **params,
            "action": action,
            "api_key": self._api_key,
            "timestamp": str(int(time.time())),
            "format": "json",
            "v": API_VERSION,
        }
        out["sig"] = sign(out, self._secret)
        return out

    @staticmethod
    def _read_response(r: httpx.Response) -> Dict[str, Any]:
        """Decode a JSON response; error documents become RemoteError."""
        r.raise_for_status()
        data = r.json()
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            err = data["error"]
            raise RemoteError(err.get("message") or "Remote error", code=err.get("errorCode"))
        return data

    def check_sums(self, app_id: str) -> Dict[str, Any]:
        """application.checkSums: {path: crc} of the currently deployed archive."""
        log.debug("application.checkSums app_id=%s", app_id)
        with httpx.Client(timeout=60.0) as client:
            r = client.get(self._api_url, params=self._signed("application.checkSums", {"app_id": app_id}))
            data = self._read_response(r)
        checksums = data.get("checksums") if isinstance(data, dict) else None
        if not isinstance(checksums, dict):
            raise RemoteError(f"No checksum catalog in response for {app_id}", code="InvalidResponse")
        log.debug("check_sums returned %d entries", len(checksums))
        return checksums

    def jar_hashes(self, app_id: str, hashes: Dict[str, str]) -> Dict[str, str]:
        """
        application.jarHashes: send local nested-entry hashes, receive the ones the
        remote already holds. POSTed because the hashes payload can be large.
        """
        log.debug("application.jarHashes app_id=%s local=%d", app_id, len(hashes))
        params = {"app_id": app_id, "hashes": json.dumps(hashes, sort_keys=True)}
        with httpx.Client(timeout=120.0) as client:
            r = client.post(self._api_url, data=self._signed("application.jarHashes", params))
            data = self._read_response(r)
        jar_hash = data.get("jarHash") if isinstance(data, dict) else None
        if not isinstance(jar_hash, dict):
            raise RemoteError(f"No jar hash catalog in response for {app_id}", code="InvalidResponse")
        log.debug("jar_hashes returned %d entries", len(jar_hash))
        return jar_hash

    def deploy_archive(self, archive: Path, args: DeployArgs, is_delta: bool) -> Dict[str, Any]:
        """
        application.deployArchive: multipart upload of archive (and optional source
        archive) plus metadata. Retries on 429/502/503 and on timeout.
        """
        archive = Path(archive)
        total = archive.stat().st_size + (args.src_file.stat().st_size if args.src_file else 0)
        log.info("Uploading %s (%d bytes, %s) for %s", archive.name, total, "delta" if is_delta else "full", args.app_id)
        params = {
            "app_id": args.app_id,
            "archive_type": args.archive_type,
            "create": str(args.create).lower(),
            "delta_deploy": str(is_delta).lower(),
            "parameters": json.dumps(args.parameters or {}),
            "variables": json.dumps(args.variables or {}),
            "expires": str(int(time.time()) + DEPLOY_EXPIRY_SECONDS),
        }
        if args.environment is not None:
            params["environment"] = args.environment
        if args.description is not None:
            params["description"] = args.description
        # 10 min base + 60 sec per MB, cap 30 min
        timeout = 600.0 + min(1200.0, total / (1024 * 1024) * 60)
        max_attempts = 5
        for attempt in range(max_attempts):
            counter = {"sent": 0}
            try:
                with archive.open("rb") as archive_fh:
                    src_fh = args.src_file.open("rb") if args.src_file else None
                    try:
                        files = {"archive": (archive.name, self._wrap(archive_fh, counter, total, args.progress), "application/octet-stream")}
                        if src_fh is not None:
                            files["src"] = (args.src_file.name, self._wrap(src_fh, counter, total, args.progress), "application/octet-stream")
                        with httpx.Client(timeout=timeout) as client:
                            r = client.post(
                                self._api_url,
                                data=self._signed("application.deployArchive", params),
                                files=files,
                            )
                    finally:
                        if src_fh is not None:
                            src_fh.close()
                if r.status_code in (429, 502, 503) and attempt < max_attempts - 1:
                    if r.status_code == 429:
                        retry_after = r.headers.get("Retry-After")
                        if retry_after and retry_after.isdigit():
                            delay = min(65, int(retry_after))
                        else:
                            delay = 65
                    else:
                        delay = 2 * (2 ** attempt)
                    log.warning(
                        "Deploy %s: %s %s, retry in %ds (attempt %d/%d)",
                        args.app_id, r.status_code, r.reason_phrase, delay, attempt + 1, max_attempts,
                    )
                    time.sleep(delay)
                    continue
                try:
                    return self._read_response(r)
                except (RemoteError, ValueError):
                    log.error("Invalid application deployment response: %s", args.app_id)
                    log.debug("Deploy response trace: %s", r.text)
                    raise
            except httpx.TimeoutException:
                if attempt < max_attempts - 1:
                    delay = 10 * (attempt + 1)
                    log.warning(
                        "Deploy %s: timeout, retry in %ds (attempt %d/%d)",
                        args.app_id, delay, attempt + 1, max_attempts,
                    )
                    time.sleep(delay)
                    continue
                raise

    @staticmethod
    def _wrap(fh: BinaryIO, counter: Dict[str, int], total: int, progress: Optional[UploadProgress]):
        if progress is None:
            return fh
        return _ProgressReader(fh, counter, total, progress)
