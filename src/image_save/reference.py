from __future__ import annotations

from dataclasses import dataclass

from image_save.constants import (
    DEFAULT_MIRROR,
    DEFAULT_NAMESPACE,
    DEFAULT_TAG,
    logger,
)
from image_save.errors import InvalidReferenceError


@dataclass(frozen=True)
class ImageReference:
    registry: str
    namespace: str
    repository: str
    tag: str
    url: str

    def __str__(self) -> str:
        return f"{self.registry}/{self.path}:{self.tag}"

    @property
    def path(self) -> str:
        """repository path on the registry (`namespace/repository`)"""
        return "/".join(part for part in (self.namespace, self.repository) if part)

    @property
    def has_tag(self) -> bool:
        """whether the user-supplied locator already embeds a tag"""
        return ":" in self.url


def parse_reference(url: str, mirror: str = DEFAULT_MIRROR) -> ImageReference:
    """ImageReference from a `[registry/][namespace/]repository[:tag]` locator

    Registry defaults to `mirror`. A two-parts locator is a `registry/repository`
    only if its first part looks like a domain (contains a dot)."""
    parts = url.split("/", 2)

    repo_and_tag = parts[-1].split(":")
    if len(repo_and_tag) > 2:  # noqa: PLR2004
        raise InvalidReferenceError(url)
    if len(repo_and_tag) == 2:  # noqa: PLR2004
        repository, tag = repo_and_tag
    else:
        logger.info(f"Using default tag: {DEFAULT_TAG}")
        repository, tag = repo_and_tag[0], DEFAULT_TAG

    if len(parts) == 3:  # noqa: PLR2004
        registry, namespace = parts[0], parts[1]
    elif len(parts) == 2:  # noqa: PLR2004
        if "." in parts[0]:
            registry, namespace = parts[0], ""
        else:
            registry, namespace = mirror, parts[0]
    else:
        registry, namespace = mirror, DEFAULT_NAMESPACE

    return ImageReference(
        registry=registry,
        namespace=namespace,
        repository=repository,
        tag=tag,
        url=url,
    )
