from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, field, replace
from typing import Mapping

from image_save.constants import DEFAULT_MIRROR, PASSWORD_ENV
from image_save.platform import PlatformFilter, host_architecture


@dataclass(frozen=True)
class SaveOptions:
    """Everything a save run needs, as received from the command line"""

    image: str
    os_filters: tuple[str, ...] = ()
    arch_filters: tuple[str, ...] = field(
        default_factory=lambda: (host_architecture(),)
    )
    output: pathlib.Path | None = None
    username: str = ""
    password: str = field(default="", repr=False)
    mirror: str = DEFAULT_MIRROR
    insecure: bool = False
    # folder to build the image folder (and default archive) into
    build_dir: pathlib.Path | None = None

    @property
    def platform_filter(self) -> PlatformFilter:
        return PlatformFilter.create(os=self.os_filters, architecture=self.arch_filters)

    def with_env_password(self, environ: Mapping[str, str] | None = None):
        """copy with password read from environment if user has none"""
        if not self.username or self.password:
            return self
        environ = os.environ if environ is None else environ
        if PASSWORD_ENV not in environ:
            return self
        return replace(self, password=environ[PASSWORD_ENV])
