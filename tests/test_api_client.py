"""Tests for DeployAPI with mocked HTTP."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import httpx
import pytest

from deltadeploy.api.client import DeployAPI, DeployArgs, sign
from deltadeploy.errors import RemoteError


@pytest.fixture
def mock_httpx_client():
    """Patch httpx.Client so requests return controlled responses."""
    with patch("deltadeploy.api.client.httpx.Client") as MockClient:
        yield MockClient


def _client_returning(mock_httpx_client, method: str, payload, status_code: int = 200) -> MagicMock:
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.raise_for_status = MagicMock()
    mock_response.json.return_value = payload
    mock_client_instance = MagicMock()
    getattr(mock_client_instance, method).return_value = mock_response
    mock_httpx_client.return_value.__enter__.return_value = mock_client_instance
    mock_httpx_client.return_value.__exit__.return_value = False
    return mock_client_instance


def test_sign_is_md5_of_sorted_pairs_and_secret() -> None:
    """Signature covers parameters in key order, then the secret."""
    import hashlib

    expected = hashlib.md5(b"a1b2secret").hexdigest()
    assert sign({"b": "2", "a": "1"}, "secret") == expected


def test_check_sums_returns_catalog(mock_httpx_client) -> None:
    """check_sums() GETs application.checkSums with signed params."""
    client = _client_returning(mock_httpx_client, "get", {"checksums": {"a.txt": 1, "b.txt": 2}})
    api = DeployAPI(base_url="https://api.test.com/", api_key="key", secret="s3cret")

    assert api.check_sums("acme/app") == {"a.txt": 1, "b.txt": 2}
    client.get.assert_called_once()
    url = client.get.call_args[0][0]
    params = client.get.call_args[1]["params"]
    assert url == "https://api.test.com/api"
    assert params["action"] == "application.checkSums"
    assert params["app_id"] == "acme/app"
    assert params["api_key"] == "key"
    assert params["format"] == "json"
    unsigned = {k: v for k, v in params.items() if k != "sig"}
    assert params["sig"] == sign(unsigned, "s3cret")


def test_check_sums_empty_catalog_is_valid(mock_httpx_client) -> None:
    """An explicit empty checksums map means nothing is deployed yet."""
    _client_returning(mock_httpx_client, "get", {"checksums": {}})
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    assert api.check_sums("acme/app") == {}


@pytest.mark.parametrize("payload", [{}, {"unexpected": "shape"}, {"checksums": None}, {"checksums": [1, 2]}, ["a.txt"]])
def test_check_sums_without_catalog_raises(mock_httpx_client, payload) -> None:
    """A response with no checksums map is an error, not an empty catalog."""
    _client_returning(mock_httpx_client, "get", payload)
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    with pytest.raises(RemoteError) as exc_info:
        api.check_sums("acme/app")
    assert exc_info.value.code == "InvalidResponse"


def test_error_document_raises_remote_error(mock_httpx_client) -> None:
    _client_returning(mock_httpx_client, "get", {"error": {"message": "no such app", "errorCode": "AppNotFound"}})
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    with pytest.raises(RemoteError) as exc_info:
        api.check_sums("acme/missing")
    assert exc_info.value.code == "AppNotFound"


def test_missing_credentials_raise_before_request(mock_httpx_client) -> None:
    client = _client_returning(mock_httpx_client, "get", {})
    api = DeployAPI(base_url="https://api.test.com")
    with pytest.raises(RemoteError):
        api.check_sums("acme/app")
    client.get.assert_not_called()


def test_jar_hashes_posts_local_hashes(mock_httpx_client) -> None:
    """jar_hashes() POSTs the local hashes as JSON and returns the remote's jarHash map."""
    client = _client_returning(mock_httpx_client, "post", {"jarHash": {"lib.jar/X.class": "ab"}})
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")

    result = api.jar_hashes("acme/app", {"lib.jar/X.class": "ab", "lib.jar/Y.class": "cd"})

    assert result == {"lib.jar/X.class": "ab"}
    data = client.post.call_args[1]["data"]
    assert data["action"] == "application.jarHashes"
    assert json.loads(data["hashes"]) == {"lib.jar/X.class": "ab", "lib.jar/Y.class": "cd"}


@pytest.mark.parametrize("payload", [{}, {"jarHash": None}, {"jarHash": "ab"}])
def test_jar_hashes_without_catalog_raises(mock_httpx_client, payload) -> None:
    """A response with no jarHash map is an error, not an empty catalog."""
    _client_returning(mock_httpx_client, "post", payload)
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    with pytest.raises(RemoteError):
        api.jar_hashes("acme/app", {"lib.jar/X.class": "ab"})


def test_missing_catalog_fails_preparation(mock_httpx_client, make_archive, out_dir) -> None:
    """An unexpected checksums response aborts the deploy instead of falling back to a full upload."""
    from deltadeploy.deploy.orchestrator import DeltaOrchestrator
    from deltadeploy.errors import CatalogFetchFailure

    war = make_archive({"index.html": b"<html/>"})
    _client_returning(mock_httpx_client, "get", {"unexpected": "shape"})
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    with pytest.raises(CatalogFetchFailure):
        DeltaOrchestrator(api, output_dir=out_dir).prepare(DeployArgs(app_id="acme/app", archive=war))
    assert list(out_dir.iterdir()) == []


def test_deploy_archive_posts_metadata_and_file(mock_httpx_client, tmp_path: Path) -> None:
    archive = tmp_path / "app.war"
    archive.write_bytes(b"PK-archive-bytes")
    client = _client_returning(mock_httpx_client, "post", {"status": "hibernate"})
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    args = DeployArgs(
        app_id="acme/app",
        archive=archive,
        environment="prod",
        description="release 1",
        parameters={"jvm": "8"},
    )

    assert api.deploy_archive(archive, args, is_delta=True) == {"status": "hibernate"}

    call_kw = client.post.call_args[1]
    data = call_kw["data"]
    assert data["action"] == "application.deployArchive"
    assert data["app_id"] == "acme/app"
    assert data["archive_type"] == "war"
    assert data["delta_deploy"] == "true"
    assert data["create"] == "false"
    assert data["environment"] == "prod"
    assert data["description"] == "release 1"
    assert json.loads(data["parameters"]) == {"jvm": "8"}
    assert int(data["expires"]) > 0
    assert call_kw["files"]["archive"][0] == "app.war"
    assert "src" not in call_kw["files"]


def test_deploy_archive_reports_progress(mock_httpx_client, tmp_path: Path) -> None:
    """The progress wrapper counts bytes as the transport reads the file."""
    archive = tmp_path / "app.war"
    archive.write_bytes(b"x" * 100)
    client = _client_returning(mock_httpx_client, "post", {})
    progress = MagicMock()

    def read_all(url, data, files):
        fh = files["archive"][1]
        while fh.read(30):
            pass
        return client.post.return_value

    client.post.side_effect = read_all
    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    api.deploy_archive(archive, DeployArgs(app_id="a", archive=archive, progress=progress), is_delta=False)
    assert progress.call_args[0] == (100, 100)


def test_deploy_archive_retries_on_503(mock_httpx_client, tmp_path: Path, monkeypatch) -> None:
    archive = tmp_path / "app.war"
    archive.write_bytes(b"bytes")
    monkeypatch.setattr("deltadeploy.api.client.time.sleep", lambda s: None)
    busy = MagicMock(status_code=503, reason_phrase="Service Unavailable")
    ok = MagicMock(status_code=200)
    ok.raise_for_status = MagicMock()
    ok.json.return_value = {"status": "active"}
    client = MagicMock()
    client.post.side_effect = [busy, ok]
    mock_httpx_client.return_value.__enter__.return_value = client
    mock_httpx_client.return_value.__exit__.return_value = False

    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    assert api.deploy_archive(archive, DeployArgs(app_id="a", archive=archive), is_delta=False) == {"status": "active"}
    assert client.post.call_count == 2


def test_deploy_archive_raises_http_errors(mock_httpx_client, tmp_path: Path) -> None:
    archive = tmp_path / "app.war"
    archive.write_bytes(b"bytes")
    request = httpx.Request("POST", "https://api.test.com/api")
    response = httpx.Response(400, request=request)
    client = MagicMock()
    client.post.return_value = response
    mock_httpx_client.return_value.__enter__.return_value = client
    mock_httpx_client.return_value.__exit__.return_value = False

    api = DeployAPI(base_url="https://api.test.com", api_key="k", secret="s")
    with pytest.raises(httpx.HTTPStatusError):
        api.deploy_archive(archive, DeployArgs(app_id="a", archive=archive), is_delta=False)


def test_set_base_url_strips_trailing_slash() -> None:
    api = DeployAPI(base_url="https://api.test.com/")
    assert api._base_url == "https://api.test.com"
    api.set_base_url("https://other.test/")
    assert api._base_url == "https://other.test"


def test_default_base_url_from_env(monkeypatch) -> None:
    monkeypatch.setenv("DELTADEPLOY_API_URL", "https://env.test/")
    assert DeployAPI()._base_url == "https://env.test"
