from __future__ import annotations

import hashlib
import json
from typing import Any

import pytest

from image_save.errors import TransportError
from image_save.manifest import MediaKind
from image_save.progress import LayerTracker


def pytest_addoption(parser: pytest.Parser):
    parser.addoption(
        "--run-slow",
        action="store_true",
        default=False,
        help="run slow tests (require network access)",
    )


def pytest_configure(config: pytest.Config):
    config.addinivalue_line("markers", "slow: mark test as slow to run")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]):
    skip_slow = pytest.mark.skip(reason="needs --run-slow")
    for item in items:
        if "slow" in item.keywords and not config.getoption("--run-slow"):
            item.add_marker(skip_slow)


def digest_of(content: bytes) -> str:
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


class FakeRegistry:
    """In-memory registry source"""

    def __init__(self, chunk_size: int = 4):
        self.manifests: dict[str | None, tuple[bytes, str]] = {}
        self.blobs: dict[str, bytes] = {}
        self.chunk_size = chunk_size
        self.manifest_requests: list[str | None] = []
        self.blob_requests: list[str] = []

    def add_manifest(
        self, payload: dict[str, Any], media_type: str, *, top: bool = False
    ) -> str:
        raw = json.dumps(payload, indent=3).encode("utf-8")
        digest = digest_of(raw)
        self.manifests[digest] = (raw, media_type)
        if top:
            self.manifests[None] = (raw, media_type)
        return digest

    def add_blob(self, content: bytes) -> str:
        digest = digest_of(content)
        self.blobs[digest] = content
        return digest

    def add_config(self, architecture: str = "amd64", os: str = "linux", **extra):
        return self.add_blob(
            json.dumps(
                {
                    "architecture": architecture,
                    "os": os,
                    "config": {"Cmd": ["/bin/sh"]},
                    "history": [{"created_by": "ADD rootfs"}],
                    "rootfs": {"type": "layers", "diff_ids": []},
                    **extra,
                }
            ).encode("utf-8")
        )

    def add_image(
        self,
        layers: list[bytes],
        *,
        architecture: str = "amd64",
        os: str = "linux",
        top: bool = False,
        media_type: str = MediaKind.V2_IMAGE.value,
    ) -> str:
        config = self.add_config(architecture=architecture, os=os)
        return self.add_manifest(
            {
                "schemaVersion": 2,
                "mediaType": media_type,
                "config": {"digest": config, "size": len(self.blobs[config])},
                "layers": [
                    {"digest": self.add_blob(layer), "size": len(layer)}
                    for layer in layers
                ],
            },
            media_type,
            top=top,
        )

    def get_manifest(self, digest: str | None = None) -> tuple[bytes, str]:
        self.manifest_requests.append(digest)
        try:
            return self.manifests[digest]
        except KeyError:
            raise TransportError(f"manifest {digest} not found") from None

    def get_blob(self, digest: str, urls: list[str] | None = None, size: int = -1):
        self.blob_requests.append(digest)
        try:
            content = self.blobs[digest]
        except KeyError:
            raise TransportError(f"blob {digest} not found") from None
        chunks = [
            content[index : index + self.chunk_size]
            for index in range(0, len(content), self.chunk_size)
        ]
        return iter(chunks), len(content)


def list_entry(digest: str, platform: dict[str, str], media_type: str):
    return {
        "mediaType": media_type,
        "digest": digest,
        "size": 100,
        "platform": platform,
    }


class FakeBar:
    def __init__(self):
        self.values: list[int] = []
        self.finished = False

    def update(self, value: int):
        self.values.append(value)

    def finish(self):
        self.finished = True


class FakeDisplay:
    def __init__(self):
        self.trackers: dict[str, LayerTracker] = {}
        self.started = False
        self.aborted = False
        self.waited = False

    def add_tracker(self, label: str, total: int) -> LayerTracker:
        tracker = LayerTracker(FakeBar(), total)
        self.trackers[label] = tracker
        return tracker

    def start(self):
        self.started = True

    def abort(self):
        self.aborted = True
        for tracker in self.trackers.values():
            tracker.mark_done()

    def wait(self):
        self.waited = True


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def display() -> FakeDisplay:
    return FakeDisplay()
