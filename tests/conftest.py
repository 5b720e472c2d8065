"""
Shared fixtures: an isolated cellar home, a stubbed HTTP layer and
archive builders for app-bundle tarballs.
"""

import hashlib
import io
import os
import tarfile
import tempfile

# Keep config, logs and the default registry out of the real home directory
os.environ.setdefault("CELLAR_HOME", tempfile.mkdtemp(prefix="cellar-test-home-"))

import pytest
import requests

from cellar.config.manager import CellarLayout
from cellar.schemas.manifest import Manifest, CopyIntoPrefix, WriteExecutableWrapper
from cellar.services import download_service
from cellar.services.database.engine import DatabaseManager
from cellar.services.installer_service import Installer
from cellar.services.registry_service import RegistryService

APP = "pomodoro_for_mac.app"
BINARY = f"{APP}/Contents/MacOS/pomodoro_for_mac"
# Prints each argument followed by '|', then echoes stdin, then exits 7
APP_SCRIPT = b"#!/bin/sh\nprintf '%s|' \"$@\"\ncat\nexit 7\n"


class FakeResponse:
    def __init__(self, body=b"", status_code=200):
        self.body = body
        self.status_code = status_code
        self.headers = {"content-length": str(len(body))}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]


class FakeHTTP:
    """Stands in for requests.get; unknown URLs behave like unreachable hosts."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def serve(self, url, body, status_code=200):
        self.routes[url] = (body, status_code)

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if url not in self.routes:
            raise requests.ConnectionError(f"Failed to resolve host for {url}")
        body, status_code = self.routes[url]
        return FakeResponse(body, status_code)

    def count(self, url):
        return sum(1 for called, _ in self.calls if called == url)


def build_tar_gz(files, dirs=()):
    """
    Build a .tar.gz in memory.

    ``files`` maps archive paths to ``(content, mode)``; ``dirs`` lists
    directory entries.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name in dirs:
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, (content, mode) in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = mode
            tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def build_app_archive(script=APP_SCRIPT):
    return build_tar_gz(
        files={
            BINARY: (script, 0o755),
            f"{APP}/Contents/Info.plist": (b"<plist/>", 0o644),
        },
        dirs=[APP, f"{APP}/Contents", f"{APP}/Contents/MacOS"],
    )


def sha256(data):
    return hashlib.sha256(data).hexdigest()


def make_manifest(body, version="0.1", name="pomodoromac", url=None):
    return Manifest(
        name=name,
        description="Basic pomodoro for macOS",
        homepage="https://github.com/0x3m1r/PomodoroMac",
        source_url=url or f"https://example.test/{name}/{version}/pomodoro_for_mac.tar.gz",
        content_hash=sha256(body),
        version=version,
        install_actions=[CopyIntoPrefix(APP), WriteExecutableWrapper(BINARY)],
    )


def snapshot(root):
    """Set of file paths (not directories) under ``root``."""
    if not root.exists():
        return set()
    return {p.relative_to(root).as_posix() for p in root.rglob("*") if not p.is_dir()}


@pytest.fixture
def fake_http(monkeypatch):
    http = FakeHTTP()
    monkeypatch.setattr(download_service.requests, "get", http.get)
    return http


@pytest.fixture
def layout(tmp_path):
    return CellarLayout.from_root(tmp_path / "cellar")


@pytest.fixture
def registry(layout):
    manager = DatabaseManager(db_path=layout.db_path)
    service = RegistryService(manager)
    yield service
    manager.dispose()


@pytest.fixture
def installer(layout, registry):
    return Installer(layout=layout, registry=registry)


@pytest.fixture
def served_app(fake_http):
    """Serve one app archive and return ``(manifest, body)``."""
    body = build_app_archive()
    manifest = make_manifest(body)
    fake_http.serve(manifest.source_url, body)
    return manifest, body
