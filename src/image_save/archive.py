from __future__ import annotations

import pathlib
import shutil
import tarfile
from typing import Iterator

from image_save.constants import logger


def iter_tree(root: pathlib.Path) -> Iterator[pathlib.Path]:
    """every entry below root, depth-first in lexical order"""
    for path in sorted(root.iterdir(), key=lambda entry: entry.name):
        yield path
        if path.is_dir() and not path.is_symlink():
            yield from iter_tree(path)


def archive_dir(source_dir: pathlib.Path, dest_file: pathlib.Path) -> pathlib.Path:
    """gzip'd tar of source_dir at dest_file. source_dir is removed"""
    if dest_file.is_dir() and not dest_file.is_symlink():
        logger.debug(f"delete target dir: {dest_file}")
        shutil.rmtree(dest_file)
    elif dest_file.exists() or dest_file.is_symlink():
        logger.debug(f"delete target file: {dest_file}")
        dest_file.unlink()
    dest_file.parent.mkdir(parents=True, exist_ok=True)

    logger.info(f"Creating archive at {dest_file}")
    with tarfile.open(dest_file, "w:gz") as tar:
        # root folder gets its own entry, content stays at archive root
        tar.add(source_dir, arcname=source_dir.name, recursive=False)
        for path in iter_tree(source_dir):
            tar.add(
                path, arcname=path.relative_to(source_dir).as_posix(), recursive=False
            )
            logger.debug(f"tar {path}")

    logger.debug(f"Removing temp image dir {source_dir}")
    shutil.rmtree(source_dir)
    return dest_file
