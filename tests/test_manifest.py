from __future__ import annotations

import json

import pytest
from conftest import FakeRegistry, list_entry

from image_save.errors import (
    ManifestFormatError,
    NoMatchingManifestError,
    TooManyMatchesError,
    TransportError,
    UnsupportedMediaTypeError,
)
from image_save.manifest import (
    ImageManifest,
    ManifestList,
    ManifestResolver,
    MediaKind,
    guess_media_type,
    parse_manifest,
    read_config,
)
from image_save.platform import PlatformFilter

V2 = MediaKind.V2_IMAGE.value
OCI = MediaKind.CURRENT_IMAGE.value
LIST = MediaKind.V2_LIST.value
INDEX = MediaKind.CURRENT_INDEX.value

AMD64 = {"architecture": "amd64", "os": "linux"}
ARM64 = {"architecture": "arm64", "os": "linux", "variant": "v8"}
ARMV7 = {"architecture": "arm", "os": "linux", "variant": "v7"}


def arch(*values: str) -> PlatformFilter:
    return PlatformFilter(architecture=values)


def add_list(
    registry: FakeRegistry,
    children: list[tuple[str, dict[str, str]]],
    media_type: str = LIST,
    *,
    top: bool = True,
) -> str:
    return registry.add_manifest(
        {
            "schemaVersion": 2,
            "mediaType": media_type,
            "manifests": [
                list_entry(digest, platform, V2 if media_type == LIST else OCI)
                for digest, platform in children
            ],
        },
        media_type,
        top=top,
    )


def test_single_image_matching_config(registry: FakeRegistry):
    digest = registry.add_image([b"base", b"top"], architecture="amd64", top=True)
    resolved = ManifestResolver(registry).resolve_single(arch("amd64"))

    assert resolved.digest == digest
    assert resolved.raw == registry.manifests[None][0]
    assert resolved.manifest.kind == MediaKind.V2_IMAGE
    assert [layer.size for layer in resolved.manifest.layers] == [4, 3]
    # platform is read from the config blob
    assert resolved.manifest.config.digest in registry.blob_requests


@pytest.mark.parametrize(
    "platform_filter",
    [
        arch("arm64"),
        PlatformFilter(os=("windows",), architecture=("amd64",)),
    ],
)
def test_single_image_rejected(
    registry: FakeRegistry, platform_filter: PlatformFilter
):
    registry.add_image([b"base"], architecture="amd64", top=True)
    with pytest.raises(NoMatchingManifestError, match="mismatch of os"):
        ManifestResolver(registry).resolve_single(platform_filter, url="app")


def test_oci_image_not_filtered(registry: FakeRegistry):
    registry.add_image([b"base"], architecture="amd64", top=True, media_type=OCI)
    resolved = ManifestResolver(registry).resolve_single(arch("s390x"))
    assert resolved.manifest.kind == MediaKind.CURRENT_IMAGE
    assert registry.blob_requests == []


def test_list_selects_platform(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    arm64 = registry.add_image([b"arm64 layer"], architecture="arm64")
    add_list(registry, [(amd64, AMD64), (arm64, ARM64)])

    resolved = ManifestResolver(registry).resolve_single(arch("arm64"))

    assert resolved.digest == arm64
    assert resolved.raw == registry.manifests[arm64][0]
    assert registry.manifest_requests == [None, arm64]
    # list platform is authoritative: no config check for children
    assert registry.blob_requests == []


def test_list_more_than_one_match(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    arm64 = registry.add_image([b"arm64 layer"], architecture="arm64")
    add_list(registry, [(amd64, AMD64), (arm64, ARM64)])

    with pytest.raises(TooManyMatchesError) as exc_info:
        ManifestResolver(registry).resolve_single(PlatformFilter(), url="app")
    assert exc_info.value.digests == [amd64, arm64]
    assert "greater than 1" in str(exc_info.value)


def test_list_no_match(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    add_list(registry, [(amd64, AMD64)])

    with pytest.raises(NoMatchingManifestError):
        ManifestResolver(registry).resolve_single(arch("ppc64le"))
    assert registry.manifest_requests == [None]


def test_list_variant_filter(registry: FakeRegistry):
    armv7 = registry.add_image([b"armv7 layer"], architecture="arm")
    arm64 = registry.add_image([b"arm64 layer"], architecture="arm64")
    add_list(registry, [(armv7, ARMV7), (arm64, ARM64)])

    resolver = ManifestResolver(registry)
    assert resolver.resolve_single(arch("arm:v7")).digest == armv7
    with pytest.raises(NoMatchingManifestError):
        resolver.resolve_single(arch("arm:v6"))


def test_nested_list(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    arm64 = registry.add_image([b"arm64 layer"], architecture="arm64")
    inner = add_list(registry, [(amd64, AMD64), (arm64, ARM64)], top=False)
    add_list(registry, [(inner, AMD64)])

    resolver = ManifestResolver(registry, swap_nested_filters=False)
    resolved = resolver.resolve_single(arch("amd64"))

    assert resolved.digest == amd64
    assert isinstance(resolved.manifest, ImageManifest)


def test_nested_list_swaps_filters_by_default(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    inner = add_list(registry, [(amd64, AMD64)], top=False)
    add_list(registry, [(inner, AMD64)])

    # inner entries get checked against os[amd64]
    with pytest.raises(NoMatchingManifestError):
        ManifestResolver(registry).resolve_single(arch("amd64"))

    resolved = ManifestResolver(registry).resolve_single(
        PlatformFilter(os=("linux", "amd64"), architecture=("amd64", "linux"))
    )
    assert resolved.digest == amd64


def test_index_ignores_variant(registry: FakeRegistry):
    armv7 = registry.add_image([b"armv7 layer"], architecture="arm", media_type=OCI)
    add_list(registry, [(armv7, ARMV7)], INDEX)

    resolver = ManifestResolver(registry)
    # index entries are checked on os/architecture only
    with pytest.raises(NoMatchingManifestError):
        resolver.resolve_single(arch("arm:v7"))
    assert resolver.resolve_single(arch("arm")).digest == armv7


def test_list_bytes_unchanged_without_filtering(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    arm64 = registry.add_image([b"arm64 layer"], architecture="arm64")
    add_list(registry, [(amd64, AMD64), (arm64, ARM64)])
    raw, media_type = registry.manifests[None]

    resolution = ManifestResolver(registry).resolve(
        raw, media_type, PlatformFilter(os=("linux",))
    )

    assert resolution.raw == raw
    assert len(resolution.matches) == 2
    assert isinstance(resolution.node, ManifestList)
    assert len(resolution.node.manifests) == 2


def test_list_reserialized_when_filtered(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    arm64 = registry.add_image([b"arm64 layer"], architecture="arm64")
    add_list(registry, [(amd64, AMD64), (arm64, ARM64)])
    raw, media_type = registry.manifests[None]

    resolution = ManifestResolver(registry).resolve(raw, media_type, arch("arm64"))

    assert resolution.raw != raw
    payload = json.loads(resolution.raw)
    assert payload["schemaVersion"] == 2
    assert payload["mediaType"] == LIST
    assert [entry["digest"] for entry in payload["manifests"]] == [arm64]
    assert payload["manifests"][0]["platform"] == ARM64


def test_list_empty_after_filtering(registry: FakeRegistry):
    amd64 = registry.add_image([b"amd64 layer"], architecture="amd64")
    add_list(registry, [(amd64, AMD64)])
    raw, media_type = registry.manifests[None]

    resolution = ManifestResolver(registry).resolve(raw, media_type, arch("arm64"))
    assert resolution.node is None
    assert resolution.matches == []


def schema1(architecture: str) -> dict:
    return {
        "schemaVersion": 1,
        "name": "library/app",
        "tag": "1.0",
        "architecture": architecture,
        "fsLayers": [{"blobSum": "sha256:top"}, {"blobSum": "sha256:base"}],
        "history": [
            {"v1Compatibility": json.dumps({"id": "abc", "architecture": "amd64"})},
            {"v1Compatibility": json.dumps({"id": "def"})},
        ],
    }


def test_schema1(registry: FakeRegistry):
    registry.add_manifest(schema1("amd64"), MediaKind.LEGACY_V1_SIGNED.value, top=True)
    resolved = ManifestResolver(registry).resolve_single(arch("amd64"))

    assert resolved.manifest.kind == MediaKind.LEGACY_V1_SIGNED
    assert [layer.digest for layer in resolved.manifest.layers] == [
        "sha256:base",
        "sha256:top",
    ]
    assert json.loads(read_config(registry, resolved.manifest))["id"] == "abc"
    assert registry.blob_requests == []


def test_schema1_rejected(registry: FakeRegistry):
    registry.add_manifest(schema1("arm"), MediaKind.LEGACY_V1.value, top=True)
    with pytest.raises(NoMatchingManifestError):
        ManifestResolver(registry).resolve_single(arch("amd64"))


def test_unsupported_media_type(registry: FakeRegistry):
    registry.add_manifest({"schemaVersion": 2}, "application/x-unknown", top=True)
    with pytest.raises(UnsupportedMediaTypeError, match="application/x-unknown"):
        ManifestResolver(registry).resolve_single(arch("amd64"))


@pytest.mark.parametrize(
    "raw, media_type",
    [
        (b"not json", V2),
        (b"[]", LIST),
        (b'{"schemaVersion": 2}', V2),
        (b'{"manifests": [{"size": 1}]}', INDEX),
        (b'{"schemaVersion": 1}', MediaKind.LEGACY_V1.value),
        (b'{"manifests": [{"digest": "sha256:a", "platform": "linux/amd64"}]}', LIST),
        (b'{"manifests": [{"digest": "sha256:a", "platform": ["linux"]}]}', INDEX),
    ],
)
def test_malformed_manifest(raw: bytes, media_type: str):
    with pytest.raises(ManifestFormatError):
        parse_manifest(raw, media_type)


def test_missing_child_manifest(registry: FakeRegistry):
    add_list(registry, [("sha256:missing", AMD64)])
    with pytest.raises(TransportError):
        ManifestResolver(registry).resolve_single(arch("amd64"))


def test_read_config_without_config():
    manifest = ImageManifest(kind=MediaKind.V2_IMAGE, config=None, layers=[])
    with pytest.raises(ManifestFormatError):
        read_config(FakeRegistry(), manifest)


@pytest.mark.parametrize(
    "payload, expected",
    [
        ({"mediaType": LIST, "manifests": []}, LIST),
        ({"schemaVersion": 1, "fsLayers": []}, MediaKind.LEGACY_V1.value),
        (
            {"schemaVersion": 1, "signatures": [{"header": {}}]},
            MediaKind.LEGACY_V1_SIGNED.value,
        ),
        ({"schemaVersion": 2, "manifests": []}, INDEX),
        (
            {
                "schemaVersion": 2,
                "config": {"mediaType": "application/vnd.oci.image.config.v1+json"},
            },
            OCI,
        ),
        ({"schemaVersion": 2, "config": {}, "layers": []}, V2),
    ],
)
def test_guess_media_type(payload: dict, expected: str):
    assert guess_media_type(json.dumps(payload).encode("utf-8")) == expected


def test_media_kind_parameters():
    assert MediaKind.from_media_type(f"{V2}; charset=utf-8") == MediaKind.V2_IMAGE


def test_config_fetched_once(registry: FakeRegistry):
    registry.add_image([b"base"], architecture="amd64", top=True)
    resolved = ManifestResolver(registry).resolve_single(arch("amd64"))
    config = read_config(registry, resolved.manifest)

    assert json.loads(config)["architecture"] == "amd64"
    assert registry.blob_requests == [resolved.manifest.config.digest]
