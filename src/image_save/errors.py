from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from image_save.platform import PlatformFilter


class ImageSaveError(Exception): ...


class InvalidReferenceError(ImageSaveError, ValueError):
    def __init__(self, url: str):
        self.url = url
        super().__init__(f"invalid repository url: {url}")


class ResolutionError(ImageSaveError): ...


class NoMatchingManifestError(ResolutionError):
    def __init__(self, url: str, platform_filter: PlatformFilter):
        self.url = url
        self.platform_filter = platform_filter
        super().__init__(
            f"{url}: mismatch of os[{','.join(platform_filter.os)}] "
            f"or architecture[{','.join(platform_filter.architecture)}]"
        )


class TooManyMatchesError(ResolutionError):
    def __init__(
        self, url: str, platform_filter: PlatformFilter, digests: Sequence[str]
    ):
        self.url = url
        self.platform_filter = platform_filter
        self.digests = list(digests)
        super().__init__(
            f"{url}: matched of os[{','.join(platform_filter.os)}] "
            f"and architecture[{','.join(platform_filter.architecture)}] "
            f"greater than 1 ({', '.join(self.digests)})"
        )


class UnsupportedMediaTypeError(ResolutionError):
    def __init__(self, media_type: str):
        self.media_type = media_type
        super().__init__(f"unsupported manifest type: {media_type or '<none>'}")


class ManifestFormatError(ResolutionError, ValueError): ...


class TransportError(ImageSaveError, OSError): ...


class ExportError(ImageSaveError, OSError): ...


class WorkdirError(ExportError):
    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"target dir already exists: {path} ({reason})")


class LayerDownloadError(ExportError):
    def __init__(self, digest: str, reason: str):
        self.digest = digest
        super().__init__(f"Cannot download layer {digest[7:19]}: {reason}")
