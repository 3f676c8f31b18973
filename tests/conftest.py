"""Pytest configuration: isolate config dir and provide archive builders."""

import io
import logging
import zipfile
import zlib
from pathlib import Path
from typing import Dict, Union

import pytest

Content = Union[bytes, str]


def zip_bytes(entries: Dict[str, Content]) -> bytes:
    """Build a zip in memory. Names ending in "/" are directory entries."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, content in entries.items():
            if name.endswith("/"):
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, content.encode("utf-8") if isinstance(content, str) else content)
    return buf.getvalue()


def crc(content: Content) -> int:
    return zlib.crc32(content.encode("utf-8") if isinstance(content, str) else content) & 0xFFFFFFFF


def read_entries(path: Path) -> Dict[str, bytes]:
    """{name: bytes} of every entry in a zip file."""
    with zipfile.ZipFile(path) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}


def read_nested(path: Path, jar_name: str) -> Dict[str, bytes]:
    """{name: bytes} of every entry inside a jar nested in a zip file."""
    with zipfile.ZipFile(path) as zf:
        data = zf.read(jar_name)
    with zipfile.ZipFile(io.BytesIO(data)) as jar:
        return {info.filename: jar.read(info) for info in jar.infolist()}


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path) -> Path:
    """Point config and keyring namespace at a temp dir; clear env overrides."""
    config_dir = tmp_path / "config"
    monkeypatch.setenv("DELTADEPLOY_CONFIG_DIR", str(config_dir))
    for name in ("DELTADEPLOY_API_URL", "DELTADEPLOY_API_KEY", "DELTADEPLOY_API_SECRET"):
        monkeypatch.delenv(name, raising=False)
    return config_dir


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers the CLI installs so they do not outlive the captured streams."""
    yield
    logger = logging.getLogger("deltadeploy")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def make_archive(tmp_path: Path):
    """Write a zip to tmp_path/src/<name> and return its path."""
    src_dir = tmp_path / "src"
    src_dir.mkdir(exist_ok=True)

    def _make(entries: Dict[str, Content], name: str = "app.war") -> Path:
        path = src_dir / name
        path.write_bytes(zip_bytes(entries))
        return path

    return _make


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    d = tmp_path / "out"
    d.mkdir()
    return d
