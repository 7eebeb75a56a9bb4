"""
Image archive loading for the build task.

Opens local image archives and exposes them as read-only image artifacts:

    - docker-save tarballs (manifest.json + config + layer tarballs)
    - OCI image layout directories (oci-layout + index.json + blobs/)
    - OCI image layout tarballs (the same layout packed into a tar)

An artifact is either a SingleImage or an ImageIndex. Callers dispatch on
the type explicitly; an index never contains another index.

Only metadata (manifests, configs, layer descriptors) is held in memory.
Layer bytes are streamed from the archive on demand.
"""

import json
import logging
import os
import tarfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Union

from .validation import compute_sha256, sha256_stream, split_digest

logger = logging.getLogger(__name__)

# Manifest media types
OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

# Blob media types
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
DOCKER_CONFIG = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar"
DOCKER_LAYER_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"

IMAGE_MANIFEST_TYPES = {OCI_MANIFEST, DOCKER_MANIFEST}
INDEX_TYPES = {OCI_INDEX, DOCKER_MANIFEST_LIST}

REF_NAME_ANNOTATION = "org.opencontainers.image.ref.name"

GZIP_MAGIC = b"\x1f\x8b"


class ImageLoadError(Exception):
    """Raised when a path cannot be parsed as an image archive."""


# -------------------------------
# Blob stores
# -------------------------------


class DirectoryBlobStore:
    """Reads files and blobs from an OCI layout directory."""

    def __init__(self, root: str):
        self.root = root

    @contextmanager
    def open_file(self, name: str):
        with open(os.path.join(self.root, name), "rb") as f:
            yield f

    @contextmanager
    def open_blob(self, digest: str):
        algorithm, encoded = split_digest(digest)
        with self.open_file(f"blobs/{algorithm}/{encoded}") as f:
            yield f

    def read_file(self, name: str) -> bytes:
        with self.open_file(name) as f:
            return f.read()

    def read_blob(self, digest: str) -> bytes:
        with self.open_blob(digest) as f:
            return f.read()

    def __repr__(self):
        return f"DirectoryBlobStore({self.root})"


class TarBlobStore(DirectoryBlobStore):
    """
    Reads files and blobs from a tarball.

    Every open re-opens the tarball, so concurrent readers never share a
    file position.

    Args:
        root: Path to the tarball
        aliases: Optional digest -> member name mapping for archives that do
            not store blobs under blobs/<algorithm>/<hex> (docker-save layers)
    """

    def __init__(self, root: str, aliases: dict[str, str] | None = None):
        super().__init__(root)
        self.aliases = aliases or {}

    @contextmanager
    def open_file(self, name: str):
        with tarfile.open(self.root, "r:*") as tar:
            member = _find_member(tar, name)
            if member is None:
                raise FileNotFoundError(f"{name} not found in {self.root}")
            f = tar.extractfile(member)
            if f is None:
                raise FileNotFoundError(f"{name} is not a regular file in {self.root}")
            with f:
                yield f

    @contextmanager
    def open_blob(self, digest: str):
        if digest in self.aliases:
            with self.open_file(self.aliases[digest]) as f:
                yield f
        else:
            with super().open_blob(digest) as f:
                yield f

    def __repr__(self):
        return f"TarBlobStore({self.root})"


def _normalize_member(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    return name.lstrip("/")


def _find_member(tar: tarfile.TarFile, name: str):
    wanted = _normalize_member(name)
    for member in tar:
        if _normalize_member(member.name) == wanted:
            # extractfile() follows the links docker-save uses for duplicate layers
            return member
    return None


# -------------------------------
# Artifacts
# -------------------------------


@dataclass(frozen=True)
class LayerDescriptor:
    """A content-addressed layer blob. ``index`` is the application order, oldest first."""

    digest: str
    size: int
    media_type: str
    index: int


@dataclass
class SingleImage:
    """One platform-specific image: manifest, config and ordered layers."""

    manifest: bytes
    media_type: str
    digest: str
    config: bytes
    config_digest: str
    config_media_type: str
    layers: list[LayerDescriptor]
    store: DirectoryBlobStore
    platform: dict | None = None
    annotations: dict = field(default_factory=dict)

    def layer(self, digest: str) -> LayerDescriptor | None:
        for layer in self.layers:
            if layer.digest == digest:
                return layer
        return None

    def open_blob(self, digest: str):
        """Open a blob of this image as a context-managed binary stream."""
        return self.store.open_blob(digest)

    def config_file(self) -> dict:
        return json.loads(self.config)


@dataclass
class ImageIndex:
    """A multi-platform index and the images it references."""

    manifest: bytes
    media_type: str
    digest: str
    images: list[SingleImage]

    def image(self, digest: str) -> SingleImage | None:
        for image in self.images:
            if image.digest == digest:
                return image
        return None


ImageArtifact = Union[SingleImage, ImageIndex]


def artifact_images(artifact: ImageArtifact) -> list[SingleImage]:
    """Return the platform images of an artifact, whichever variant it is."""
    if isinstance(artifact, ImageIndex):
        return list(artifact.images)
    return [artifact]


# -------------------------------
# Loading
# -------------------------------


def load_image(path: str) -> ImageArtifact:
    """
    Open an image archive and return its artifact.

    Args:
        path: docker-save tarball, OCI layout tarball or OCI layout directory

    Returns:
        SingleImage, or ImageIndex when the layout references several images

    Raises:
        ImageLoadError: If the path does not hold a readable image
    """
    logger.debug(f"Loading image archive from {path}")

    try:
        if os.path.isdir(path):
            return _load_layout(DirectoryBlobStore(path))

        if not tarfile.is_tarfile(path):
            raise ImageLoadError(f"{path} is neither a tarball nor an OCI layout directory")

        with tarfile.open(path, "r:*") as tar:
            names = {_normalize_member(name) for name in tar.getnames()}

        if "index.json" in names and "oci-layout" in names:
            return _load_layout(TarBlobStore(path))
        if "manifest.json" in names:
            return _load_docker_archive(path)
        raise ImageLoadError(f"{path} has neither index.json nor manifest.json")
    except ImageLoadError:
        raise
    except (OSError, tarfile.TarError, ValueError, KeyError, TypeError) as e:
        raise ImageLoadError(f"failed to load image from {path}: {e}") from e


def _load_docker_archive(path: str) -> SingleImage:
    """
    Load a docker-save tarball.

    docker-save archives carry no registry manifest, so a schema 2 manifest
    is generated from manifest.json. Its bytes are fixed at load time and the
    digest is computed from exactly those bytes.
    """
    store = TarBlobStore(path)
    entries = json.loads(store.read_file("manifest.json"))
    if len(entries) != 1:
        raise ImageLoadError(f"{path} contains {len(entries)} images; expected exactly one")
    entry = entries[0]

    config_bytes = store.read_file(entry["Config"])
    config_digest = compute_sha256(config_bytes)
    aliases = {config_digest: entry["Config"]}

    layers = []
    for idx, layer_name in enumerate(entry["Layers"]):
        with store.open_file(layer_name) as f:
            magic = f.read(2)
            digest, size = sha256_stream(_Prefixed(magic, f))
        media_type = DOCKER_LAYER_GZIP if magic == GZIP_MAGIC else DOCKER_LAYER
        logger.debug(f"Layer {idx + 1}/{len(entry['Layers'])}: {digest}, size: {size} bytes")
        layers.append(LayerDescriptor(digest=digest, size=size, media_type=media_type, index=idx))
        aliases[digest] = layer_name

    manifest = {
        "schemaVersion": 2,
        "mediaType": DOCKER_MANIFEST,
        "config": {
            "mediaType": DOCKER_CONFIG,
            "size": len(config_bytes),
            "digest": config_digest,
        },
        "layers": [
            {"mediaType": layer.media_type, "size": layer.size, "digest": layer.digest}
            for layer in layers
        ],
    }
    manifest_bytes = json.dumps(manifest, separators=(",", ":")).encode("utf-8")

    store.aliases = aliases
    image = SingleImage(
        manifest=manifest_bytes,
        media_type=DOCKER_MANIFEST,
        digest=compute_sha256(manifest_bytes),
        config=config_bytes,
        config_digest=config_digest,
        config_media_type=DOCKER_CONFIG,
        layers=layers,
        store=store,
    )
    logger.info(f"Loaded docker archive {path}: {len(layers)} layers, digest {image.digest}")
    return image


def _load_layout(store: DirectoryBlobStore) -> ImageArtifact:
    """
    Load an OCI image layout.

    A layout whose index.json holds a single nested index is unwrapped once.
    When the index resolves to exactly one image, that image is returned on
    its own.
    """
    index_bytes = store.read_file("index.json")
    index = json.loads(index_bytes)
    descriptors = index.get("manifests") or []
    media_type = index.get("mediaType", OCI_INDEX)
    inherited = {}

    if len(descriptors) == 1 and descriptors[0].get("mediaType") in INDEX_TYPES:
        outer = descriptors[0]
        inherited = outer.get("annotations") or {}
        index_bytes = store.read_blob(outer["digest"])
        index = json.loads(index_bytes)
        descriptors = index.get("manifests") or []
        media_type = index.get("mediaType", outer["mediaType"])

    images = []
    for desc in descriptors:
        desc_type = desc.get("mediaType", OCI_MANIFEST)
        if desc_type not in IMAGE_MANIFEST_TYPES:
            logger.debug(f"Skipping {desc_type} entry {desc.get('digest')} in {store}")
            continue
        image = _load_manifest(store, desc)
        image.annotations = {**inherited, **image.annotations}
        images.append(image)

    if not images:
        raise ImageLoadError(f"{store} references no image manifests")

    if len(images) == 1:
        logger.info(f"Loaded OCI layout {store}: single image {images[0].digest}")
        return images[0]

    artifact = ImageIndex(
        manifest=index_bytes,
        media_type=media_type,
        digest=compute_sha256(index_bytes),
        images=images,
    )
    logger.info(f"Loaded OCI layout {store}: index {artifact.digest} with {len(images)} images")
    return artifact


def _load_manifest(store: DirectoryBlobStore, desc: dict) -> SingleImage:
    manifest_bytes = store.read_blob(desc["digest"])
    manifest = json.loads(manifest_bytes)
    media_type = manifest.get("mediaType") or desc.get("mediaType", OCI_MANIFEST)

    config_desc = manifest["config"]
    config_bytes = store.read_blob(config_desc["digest"])

    layers = [
        LayerDescriptor(
            digest=layer["digest"],
            size=layer["size"],
            media_type=layer.get("mediaType", ""),
            index=idx,
        )
        for idx, layer in enumerate(manifest.get("layers") or [])
    ]

    return SingleImage(
        manifest=manifest_bytes,
        media_type=media_type,
        digest=compute_sha256(manifest_bytes),
        config=config_bytes,
        config_digest=config_desc["digest"],
        config_media_type=config_desc.get("mediaType", OCI_CONFIG),
        layers=layers,
        store=store,
        platform=desc.get("platform"),
        annotations=dict(desc.get("annotations") or {}),
    )


class _Prefixed:
    """Re-attach bytes already read from the front of a stream."""

    def __init__(self, prefix: bytes, stream):
        self.prefix = prefix
        self.stream = stream

    def read(self, size=-1):
        if self.prefix:
            head, self.prefix = self.prefix, b""
            if size is None or size < 0:
                return head + self.stream.read()
            return head + self.stream.read(max(size - len(head), 0))
        return self.stream.read(size)
