#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import pathlib
import sys

from image_save.config import SaveOptions
from image_save.constants import DEFAULT_MIRROR, PASSWORD_ENV, logger
from image_save.errors import ImageSaveError
from image_save.platform import Platform, PlatformFilter, host_architecture
from image_save.reference import ImageReference, parse_reference
from image_save.save import save

__version__ = "1.0.0"

__all__ = [
    "ImageReference",
    "ImageSaveError",
    "Platform",
    "PlatformFilter",
    "SaveOptions",
    "main",
    "parse_reference",
    "save",
]


def split_values(values: list[str] | None) -> tuple[str, ...]:
    """flatten repeated and comma-separated option values"""
    return tuple(
        item.strip()
        for value in (values or [])
        for item in value.split(",")
        if item.strip()
    )


def main():
    parser = argparse.ArgumentParser(
        prog="imsave",
        description="Save docker image to local without docker daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
    imsave ubuntu
    imsave --arch arm64 --os linux -o nginx.tgz nginx:1.25
    imsave --arch arm:v7 myuser/app:1.2

Architecture and OS values match any variant/version unless given
as `value:variant` (ex: arm:v7, windows:10.0.17763.1817)""",
    )

    parser.add_argument("-V", "--version", action="version", version=__version__)

    parser.add_argument(
        help="name of image to save. Can optionnaly include registry, namespace "
        "and tag using this format: [registry/][namespace/]repository[:tag]",
        dest="image",
    )

    parser.add_argument(
        "--arch",
        help="The architecture of the image you want to save. "
        f"Defaults to `{host_architecture()}` (guessed). Can be repeated",
        action="append",
        dest="arch",
    )

    parser.add_argument(
        "--os",
        help="The os of the image you want to save. Can be repeated",
        action="append",
        dest="os",
    )

    parser.add_argument(
        "-o",
        "--output",
        help="Output file. Defaults to {image}.tgz in current folder",
        dest="output",
    )

    parser.add_argument(
        "-u", "--user", help="Username of the registry", dest="username", default=""
    )

    parser.add_argument(
        "-p",
        "--passwd",
        help=f"Password of the registry. Read from {PASSWORD_ENV} if not set",
        dest="password",
        default="",
    )

    parser.add_argument(
        "-m",
        "--mirror",
        help=f"Registry to use when image has none. Defaults to `{DEFAULT_MIRROR}`",
        default=DEFAULT_MIRROR,
        dest="mirror",
    )

    parser.add_argument(
        "-i",
        "--insecure",
        help="Whether the registry is using http or a self-signed certificate",
        action="store_true",
        dest="insecure",
    )

    parser.add_argument(
        "-d",
        "--debug",
        help="Enable debug output",
        action="store_true",
        dest="debug",
    )

    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    if args.debug:
        logger.setLevel(logging.DEBUG)

    try:
        options = SaveOptions(
            image=args.image,
            os_filters=split_values(args.os),
            arch_filters=split_values(args.arch) or (host_architecture(),),
            output=pathlib.Path(args.output) if args.output else None,
            username=args.username,
            password=args.password,
            mirror=args.mirror,
            insecure=args.insecure,
        )
        save(options)
        sys.exit(0)
    except Exception as exc:
        logger.error(str(exc))
        if args.debug:
            logger.exception(exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
