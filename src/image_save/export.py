from __future__ import annotations

import contextlib
import copy
import hashlib
import json
import pathlib
import shutil
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Iterator, Sequence

import humanfriendly

from image_save.constants import DEFAULT_TAG, logger
from image_save.errors import LayerDownloadError, WorkdirError
from image_save.manifest import BlobDescriptor, ResolvedManifest, load_config
from image_save.progress import LayerProgress, LayerTracker
from image_save.reference import ImageReference

# layer json of every layer but the top one
EMPTY_LAYER_JSON: dict[str, Any] = {
    "created": "1970-01-01T00:00:00Z",
    "container_config": {
        "Hostname": "",
        "Domainname": "",
        "User": "",
        "AttachStdin": False,
        "AttachStdout": False,
        "AttachStderr": False,
        "Tty": False,
        "OpenStdin": False,
        "StdinOnce": False,
        "Env": None,
        "Cmd": None,
        "Image": "",
        "Volumes": None,
        "WorkingDir": "",
        "Entrypoint": None,
        "OnBuild": None,
        "Labels": None,
    },
}

LAYER_VERSION = b"1.0"


def format_size(size: int) -> str:
    if size < 0:
        return "unknown size"
    return humanfriendly.format_size(size, binary=True)


def format_json(data: Any, *, sort_keys: bool = True) -> bytes:
    """compact JSON, encoded the way Go's encoding/json does"""
    text = json.dumps(
        data, separators=(",", ":"), sort_keys=sort_keys, ensure_ascii=False
    )
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return text.encode("utf-8")


@dataclass(frozen=True)
class ExportLayer:
    descriptor: BlobDescriptor
    chain_id: str
    parent_id: str
    index: int

    @property
    def digest(self) -> str:
        return self.descriptor.digest

    @property
    def tar_path(self) -> str:
        return f"{self.chain_id}/layer.tar"


def make_chain_id(parent_id: str, digest: str) -> str:
    """ID of a layer and all the layers beneath it"""
    return hashlib.sha256(f"{parent_id}{digest}".encode("utf-8")).hexdigest()


def iter_export_layers(layers: Sequence[BlobDescriptor]) -> Iterator[ExportLayer]:
    parent_id = ""
    for index, descriptor in enumerate(layers):
        chain_id = make_chain_id(parent_id, descriptor.digest)
        yield ExportLayer(
            descriptor=descriptor, chain_id=chain_id, parent_id=parent_id, index=index
        )
        parent_id = chain_id


def get_workdir_name(url: str) -> str:
    """folder name to build the export of `url` into"""
    name = url.replace("/", "_")
    if ":" in name:
        return name.replace(":", "_")
    return f"{name}_{DEFAULT_TAG}"


def get_repo_tag(reference: ImageReference) -> str:
    if reference.has_tag:
        return reference.url
    return f"{reference.url}:{reference.tag}"


def make_layer_metadata(
    config: dict[str, Any], layer: ExportLayer, is_last: bool
) -> dict[str, Any]:
    # top layer = image config minus history and rootfs
    if is_last:
        metadata = copy.deepcopy(config)
        for key in ("history", "rootfs"):
            metadata.pop(key, None)
    else:
        metadata = copy.deepcopy(EMPTY_LAYER_JSON)
    metadata["id"] = layer.chain_id
    if layer.parent_id:
        metadata["parent"] = layer.parent_id
    return metadata


def write_file(path: pathlib.Path, content: bytes):
    with open(path, "wb") as fh:
        fh.write(content)


def remove_dir(path: pathlib.Path):
    shutil.rmtree(path)


@contextlib.contextmanager
def working_directory(path: pathlib.Path) -> Iterator[pathlib.Path]:
    """fresh folder at path, removed if the enclosed block fails"""
    if path.exists():
        logger.debug(f"removing existing {path}")
        try:
            remove_dir(path)
        except OSError as exc:
            raise WorkdirError(str(path), str(exc)) from exc
    path.mkdir(parents=True)

    try:
        yield path
    except BaseException:
        if path.exists():
            logger.info(f"Removing incomplete image dir {path}")
            try:
                remove_dir(path)
            except OSError as exc:
                logger.warning(f"Error Removing image dir ({path}): {exc}")
        raise


def retrieve_layer(
    source,
    layer: BlobDescriptor,
    destination: pathlib.Path,
    tracker: LayerTracker,
) -> int:
    """stream a layer blob into destination, updating tracker as it's written"""
    logger.debug(f"> [{layer.digest[7:19]}] Downloading {format_size(layer.size)}")
    written = 0
    try:
        chunks, size = source.get_blob(layer.digest, list(layer.urls), layer.size)
        with open(destination, "wb") as fh:
            for chunk in chunks:
                fh.write(chunk)
                written += len(chunk)
                tracker.increment(len(chunk))
    except OSError as exc:
        raise LayerDownloadError(layer.digest, str(exc)) from exc
    finally:
        tracker.mark_done()

    if size >= 0 and written != size:
        raise LayerDownloadError(
            layer.digest, f"wrote {written} bytes out of {size} to {destination}"
        )
    return written


class LegacyExporter:
    """Writes a resolved image into the legacy `docker save` folder layout"""

    def __init__(
        self,
        source,
        reference: ImageReference,
        display: LayerProgress | None = None,
    ):
        self.source = source
        self.reference = reference
        self.display = display

    def export(
        self, resolved: ResolvedManifest, config: bytes, workdir: pathlib.Path
    ) -> str:
        """populate workdir with the image. Returns the top layer ID"""
        config_payload = load_config(config)
        manifest = resolved.manifest
        config_name = f"{manifest.config.digest.partition(':')[2]}.json"
        total_size = sum(layer.size for layer in manifest.layers if layer.size > 0)
        logger.info(
            f"Exporting {len(manifest.layers)} layers ({format_size(total_size)}) "
            f"into {workdir}"
        )

        write_file(workdir / config_name, config)

        entry: dict[str, Any] = {
            "Config": config_name,
            "RepoTags": [get_repo_tag(self.reference)],
            "Layers": [],
        }

        layers = list(iter_export_layers(manifest.layers))
        top_id = self._write_layers(workdir, layers, config_payload, entry)

        logger.debug("create manifest.json")
        write_file(workdir / "manifest.json", format_json([entry], sort_keys=False))

        logger.debug("create repositories file")
        write_file(
            workdir / "repositories",
            format_json({self.reference.url: {self.reference.tag: top_id}}),
        )
        return top_id

    def _write_layers(
        self,
        workdir: pathlib.Path,
        layers: list[ExportLayer],
        config: dict[str, Any],
        entry: dict[str, Any],
    ) -> str:
        display = self.display or LayerProgress()
        top_id = ""

        with ThreadPoolExecutor(
            max_workers=max(len(layers), 1), thread_name_prefix="layer"
        ) as executor:
            try:
                futures = []
                for layer in layers:
                    logger.debug(f"Digest: {layer.digest}")
                    layer_dir = workdir / layer.chain_id
                    layer_dir.mkdir(parents=True, exist_ok=True)
                    write_file(layer_dir / "VERSION", LAYER_VERSION)

                    tracker = display.add_tracker(
                        f"{layer.index + 1:>2} [{layer.digest[7:19]}]",
                        layer.descriptor.size,
                    )
                    futures.append(
                        executor.submit(
                            retrieve_layer,
                            self.source,
                            layer.descriptor,
                            layer_dir / "layer.tar",
                            tracker,
                        )
                    )
                    entry["Layers"].append(layer.tar_path)

                    metadata = make_layer_metadata(
                        config, layer, is_last=layer.index == len(layers) - 1
                    )
                    write_file(layer_dir / "json", format_json(metadata))
                    top_id = layer.chain_id

                display.start()
                for future in as_completed(futures):
                    future.result()
            except BaseException:
                display.abort()
                raise
            finally:
                display.wait()

        return top_id
