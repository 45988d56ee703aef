from __future__ import annotations

import pathlib

from image_save.archive import archive_dir
from image_save.config import SaveOptions
from image_save.constants import logger
from image_save.export import LegacyExporter, get_workdir_name, working_directory
from image_save.manifest import ManifestResolver, read_config
from image_save.progress import LayerProgress
from image_save.reference import parse_reference
from image_save.registry import open_source


def get_output_path(options: SaveOptions, build_dir: pathlib.Path, name: str):
    if options.output:
        return pathlib.Path(options.output).expanduser().resolve()
    return build_dir / f"{name}.tgz"


def save(
    options: SaveOptions,
    source=None,
    display: LayerProgress | None = None,
) -> pathlib.Path:
    """save image described by options into a legacy image archive

    Params:
        `source`: registry source to use instead of opening one from options
        `display`: progress display for layer downloads"""
    options = options.with_env_password()
    reference = parse_reference(options.image, mirror=options.mirror)
    platform_filter = options.platform_filter
    logger.info(f"Using architecture: {','.join(platform_filter.architecture)}")

    if source is None:
        source = open_source(
            reference,
            username=options.username,
            password=options.password,
            insecure=options.insecure,
        )

    resolved = ManifestResolver(source).resolve_single(
        platform_filter, url=reference.url
    )
    config = read_config(source, resolved.manifest)

    build_dir = pathlib.Path(options.build_dir or pathlib.Path.cwd())
    build_dir.mkdir(parents=True, exist_ok=True)
    name = get_workdir_name(reference.url)
    output = get_output_path(options, build_dir, name)

    with working_directory(build_dir / name) as workdir:
        LegacyExporter(source, reference, display).export(resolved, config, workdir)
        archive_dir(workdir, output)

    logger.info(f"Output file: {output}")
    return output
