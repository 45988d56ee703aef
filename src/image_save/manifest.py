from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Any, Union

from image_save.constants import logger
from image_save.errors import (
    ManifestFormatError,
    NoMatchingManifestError,
    TooManyMatchesError,
    UnsupportedMediaTypeError,
)
from image_save.platform import Platform, PlatformFilter


class MediaKind(enum.Enum):
    LEGACY_V1 = "application/vnd.docker.distribution.manifest.v1+json"
    LEGACY_V1_SIGNED = "application/vnd.docker.distribution.manifest.v1+prettyjws"
    V2_IMAGE = "application/vnd.docker.distribution.manifest.v2+json"
    CURRENT_IMAGE = "application/vnd.oci.image.manifest.v1+json"
    V2_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
    CURRENT_INDEX = "application/vnd.oci.image.index.v1+json"

    @classmethod
    def from_media_type(cls, media_type: str) -> MediaKind:
        try:
            return cls(media_type.split(";", 1)[0].strip())
        except ValueError:
            raise UnsupportedMediaTypeError(media_type) from None

    @property
    def is_list(self) -> bool:
        return self in (MediaKind.V2_LIST, MediaKind.CURRENT_INDEX)


ACCEPTED_MEDIA_TYPES = [kind.value for kind in MediaKind]


def guess_media_type(raw: bytes) -> str:
    """media type of a manifest served without a meaningful Content-Type"""
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ManifestFormatError(f"unparsable manifest: {exc}") from exc
    if not isinstance(payload, dict):
        raise ManifestFormatError("manifest is not a JSON object")

    if payload.get("mediaType"):
        return payload["mediaType"]
    if payload.get("schemaVersion") == 1:
        if payload.get("signatures"):
            return MediaKind.LEGACY_V1_SIGNED.value
        return MediaKind.LEGACY_V1.value
    if "manifests" in payload:
        return MediaKind.CURRENT_INDEX.value
    if payload.get("config", {}).get("mediaType", "").startswith(
        "application/vnd.oci."
    ):
        return MediaKind.CURRENT_IMAGE.value
    return MediaKind.V2_IMAGE.value


def compute_digest(raw: bytes) -> str:
    return f"sha256:{hashlib.sha256(raw).hexdigest()}"


@dataclass(frozen=True)
class BlobDescriptor:
    digest: str
    size: int = -1
    urls: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> BlobDescriptor:
        return cls(
            digest=payload["digest"],
            size=int(payload.get("size", -1)),
            urls=tuple(payload.get("urls") or ()),
        )


@dataclass(frozen=True)
class ManifestDescriptor:
    digest: str
    media_type: str
    size: int
    platform: Platform
    payload: dict[str, Any] = field(repr=False, compare=False)


@dataclass
class ImageManifest:
    kind: MediaKind
    config: BlobDescriptor | None
    # base layer first
    layers: list[BlobDescriptor]
    architecture: str = ""
    # config bytes already at hand: inline for schema1, fetched for filtering
    embedded_config: bytes | None = field(default=None, repr=False)


@dataclass
class ManifestList:
    kind: MediaKind
    manifests: list[ManifestDescriptor]
    payload: dict[str, Any] = field(repr=False)

    def with_manifests(self, manifests: list[ManifestDescriptor]) -> ManifestList:
        return replace(self, manifests=list(manifests))

    def serialize(self) -> bytes:
        payload = dict(self.payload)
        payload["manifests"] = [descriptor.payload for descriptor in self.manifests]
        return json.dumps(payload, separators=(",", ":")).encode("utf-8")


ManifestNode = Union[ImageManifest, ManifestList]


@dataclass
class ResolvedManifest:
    manifest: ImageManifest
    raw: bytes = field(repr=False)
    digest: str


@dataclass
class Resolution:
    # the (possibly filtered) node, None when nothing matched
    node: ManifestNode | None
    raw: bytes = field(repr=False)
    matches: list[ResolvedManifest] = field(default_factory=list)


def _load(raw: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ManifestFormatError(f"unparsable manifest: {exc}") from exc
    if not isinstance(payload, dict):
        raise ManifestFormatError("manifest is not a JSON object")
    return payload


def parse_schema1(raw: bytes, kind: MediaKind) -> ImageManifest:
    payload = _load(raw)
    try:
        fs_layers = payload["fsLayers"]
        history = payload.get("history") or []
        # schema1 lists layers top-most first
        layers = [
            BlobDescriptor(digest=layer["blobSum"]) for layer in reversed(fs_layers)
        ]
        embedded_config = (
            history[0]["v1Compatibility"].encode("utf-8") if history else b"{}"
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise ManifestFormatError(f"invalid schema1 manifest: {exc!r}") from exc

    return ImageManifest(
        kind=kind,
        config=BlobDescriptor(digest=compute_digest(embedded_config)),
        layers=layers,
        architecture=payload.get("architecture", ""),
        embedded_config=embedded_config,
    )


def parse_image(raw: bytes, kind: MediaKind) -> ImageManifest:
    payload = _load(raw)
    try:
        config = payload.get("config")
        layers = [BlobDescriptor.from_payload(layer) for layer in payload["layers"]]
        return ImageManifest(
            kind=kind,
            config=BlobDescriptor.from_payload(config) if config else None,
            layers=layers,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ManifestFormatError(f"invalid {kind.value} manifest: {exc!r}") from exc


def parse_list(raw: bytes, kind: MediaKind) -> ManifestList:
    payload = _load(raw)
    try:
        manifests = [
            ManifestDescriptor(
                digest=entry["digest"],
                media_type=entry.get("mediaType", ""),
                size=int(entry.get("size", -1)),
                platform=Platform.from_payload(entry.get("platform")),
                payload=entry,
            )
            for entry in payload["manifests"]
        ]
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise ManifestFormatError(f"invalid {kind.value} manifest: {exc!r}") from exc
    return ManifestList(kind=kind, manifests=manifests, payload=payload)


def parse_manifest(raw: bytes, media_type: str) -> ManifestNode:
    kind = MediaKind.from_media_type(media_type)
    if kind.is_list:
        return parse_list(raw, kind)
    if kind in (MediaKind.LEGACY_V1, MediaKind.LEGACY_V1_SIGNED):
        return parse_schema1(raw, kind)
    return parse_image(raw, kind)


def read_blob(source, descriptor: BlobDescriptor) -> bytes:
    chunks, _ = source.get_blob(
        descriptor.digest, list(descriptor.urls), descriptor.size
    )
    return b"".join(chunks)


def read_config(source, manifest: ImageManifest) -> bytes:
    """config blob for an image manifest, fetched unless already at hand"""
    if manifest.embedded_config is not None:
        return manifest.embedded_config
    if manifest.config is None or not manifest.config.digest:
        raise ManifestFormatError("manifest does not reference a config blob")
    return read_blob(source, manifest.config)


def load_config(config: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(config)
    except ValueError as exc:
        raise ManifestFormatError(f"malformed config blob: {exc}") from exc
    if not isinstance(payload, dict):
        raise ManifestFormatError("malformed config blob: not a JSON object")
    return payload


class ManifestResolver:
    """Walks a manifest tree down to the single-platform image manifest(s)

    `source` fetches manifests (`get_manifest(digest)`) and blobs
    (`get_blob(digest, urls, size)`) for the opened image.

    Nested list entries are resolved with the OS and architecture filters
    exchanged (`swap_nested_filters`), as the historical tool did. Whether
    this is intended is not settled, hence the switch."""

    def __init__(self, source, *, swap_nested_filters: bool = True):
        self.source = source
        self.swap_nested_filters = swap_nested_filters

    def resolve_single(
        self, platform_filter: PlatformFilter, url: str = ""
    ) -> ResolvedManifest:
        """the one image manifest matching `platform_filter` for the source"""
        raw, media_type = self.source.get_manifest(None)
        resolution = self.resolve(
            raw, media_type, platform_filter, digest=compute_digest(raw)
        )
        if not resolution.matches:
            raise NoMatchingManifestError(url, platform_filter)
        if len(resolution.matches) > 1:
            raise TooManyMatchesError(
                url, platform_filter, [match.digest for match in resolution.matches]
            )
        resolved = resolution.matches[0]
        logger.debug(f"resolved manifest {resolved.digest}")
        return resolved

    def resolve(
        self,
        raw: bytes,
        media_type: str,
        platform_filter: PlatformFilter,
        parent_is_list: bool = False,
        digest: str | None = None,
    ) -> Resolution:
        node = parse_manifest(raw, media_type)
        digest = digest or compute_digest(raw)

        if isinstance(node, ManifestList):
            return self._resolve_list(node, raw, platform_filter)

        if node.kind in (MediaKind.LEGACY_V1, MediaKind.LEGACY_V1_SIGNED):
            # schema1 only tells architecture
            platform = Platform(architecture=node.architecture)
            if not parent_is_list and not platform_filter.matches(platform):
                logger.debug(f"{digest}: {platform} rejected by {platform_filter}")
                return Resolution(node=None, raw=raw)

        elif node.kind == MediaKind.V2_IMAGE:
            # platform info is stored in the config blob
            if not parent_is_list and node.config and node.config.digest:
                node.embedded_config = read_blob(self.source, node.config)
                config = load_config(node.embedded_config)
                platform = Platform(
                    architecture=str(config.get("architecture") or ""),
                    os=str(config.get("os") or ""),
                )
                if not platform_filter.matches(platform):
                    logger.debug(
                        f"{digest}: {platform} rejected by {platform_filter}"
                    )
                    return Resolution(node=None, raw=raw)

        # CURRENT_IMAGE carries no platform information
        return Resolution(
            node=node,
            raw=raw,
            matches=[ResolvedManifest(manifest=node, raw=raw, digest=digest)],
        )

    def _descriptor_platform(
        self, node: ManifestList, descriptor: ManifestDescriptor
    ) -> Platform:
        if node.kind == MediaKind.CURRENT_INDEX:
            # index entries are checked on OS and architecture only
            return Platform(
                architecture=descriptor.platform.architecture,
                os=descriptor.platform.os,
            )
        return descriptor.platform

    def _resolve_list(
        self, node: ManifestList, raw: bytes, platform_filter: PlatformFilter
    ) -> Resolution:
        nested_filter = (
            platform_filter.swapped() if self.swap_nested_filters else platform_filter
        )
        kept: list[ManifestDescriptor] = []
        matches: list[ResolvedManifest] = []

        for descriptor in node.manifests:
            platform = self._descriptor_platform(node, descriptor)
            if not platform_filter.matches(platform):
                logger.debug(f"skipping {descriptor.digest} ({platform})")
                continue

            kept.append(descriptor)
            child_raw, child_type = self.source.get_manifest(descriptor.digest)
            child = self.resolve(
                child_raw,
                child_type,
                nested_filter,
                parent_is_list=True,
                digest=descriptor.digest,
            )
            matches.extend(child.matches)

        if not kept:
            return Resolution(node=None, raw=raw)

        if len(kept) != len(node.manifests):
            node = node.with_manifests(kept)
            raw = node.serialize()

        return Resolution(node=node, raw=raw, matches=matches)
