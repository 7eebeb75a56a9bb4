"""
Local registry for preloaded image archives.

Loads image archives given as name -> path pairs and serves them read-only
over the OCI Distribution API on an OS-assigned port, so a build can say
``FROM localhost:<port>/<name>`` without a network registry.

The registry is built once by load() and never modified afterwards; request
handlers only read from it.
"""

import logging
import threading
from dataclasses import dataclass
from types import MappingProxyType

from werkzeug.serving import make_server

from .image import ImageArtifact, ImageIndex, ImageLoadError, SingleImage, load_image
from .validation import is_valid_digest, is_valid_image_name

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    """Raised when the local registry cannot be loaded or served."""


@dataclass(frozen=True)
class RegistryEntry:
    name: str
    key: str
    artifact: ImageArtifact


@dataclass(frozen=True)
class Manifest:
    body: bytes
    media_type: str
    digest: str


@dataclass(frozen=True)
class Blob:
    image: SingleImage
    digest: str
    media_type: str
    size: int
    is_config: bool


class LocalRegistry:
    """
    Immutable map of lower-cased repository name -> RegistryEntry.

    Lookups are case-insensitive. The original casing is kept for the
    generated build args, because downstream tooling treats the reference
    path as case-sensitive.
    """

    def __init__(self, entries: dict[str, RegistryEntry]):
        self._entries = MappingProxyType(dict(entries))

    @classmethod
    def load(cls, image_paths: dict[str, str]) -> "LocalRegistry":
        """
        Load every archive in ``image_paths``.

        Raises:
            RegistryError: If a name is not a valid repository path, an
                archive cannot be parsed, or two names collide after
                case-folding
        """
        entries = {}
        for name, path in image_paths.items():
            if not is_valid_image_name(name):
                raise RegistryError(
                    f"invalid image name '{name}': only alphanumeric, dots, hyphens, underscores and slashes allowed"
                )

            key = name.lower()
            if key in entries:
                raise RegistryError(
                    f"image names '{entries[key].name}' and '{name}' collide; registry names are case-insensitive"
                )

            try:
                artifact = load_image(path)
            except ImageLoadError as e:
                raise RegistryError(f"load image '{name}' from {path}: {e}") from e

            entries[key] = RegistryEntry(name=name, key=key, artifact=artifact)
            logger.info(f"Registered image '{name}' from {path}")

        return cls(entries)

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries.values())

    def lookup(self, name: str) -> RegistryEntry | None:
        return self._entries.get(name.lower())

    def build_args(self, port: int) -> list[str]:
        """Return ``name=localhost:<port>/name`` for every loaded image."""
        return [f"{entry.name}=localhost:{port}/{entry.name}" for entry in self._entries.values()]

    def serve(self, host: str = "127.0.0.1") -> int:
        """
        Serve the registry in a background thread and return the bound port.

        The listener is bound before this returns. There is no shutdown; the
        server thread is a daemon and lives until the process exits.

        Raises:
            RegistryError: If the listener cannot be bound
        """
        from .routes import create_app

        try:
            server = make_server(host, 0, create_app(self), threaded=True)
        except OSError as e:
            raise RegistryError(f"listen on {host}: {e}") from e

        thread = threading.Thread(target=server.serve_forever, name="local-registry", daemon=True)
        thread.start()

        logger.info(f"Local registry serving {len(self)} images on {host}:{server.port}")
        return server.port


def resolve_manifest(artifact: ImageArtifact, reference: str) -> Manifest | None:
    """
    Pick the manifest to return for ``reference``.

    A single image always answers with its own manifest. An index answers
    with itself when the reference is its digest or is not a digest at all
    (a tag); any other digest selects the matching platform image.

    Returns:
        Manifest, or None if the digest matches nothing in the index
    """
    if isinstance(artifact, SingleImage):
        return Manifest(artifact.manifest, artifact.media_type, artifact.digest)

    if reference == artifact.digest or not is_valid_digest(reference):
        return Manifest(artifact.manifest, artifact.media_type, artifact.digest)

    image = artifact.image(reference)
    if image is None:
        return None
    return Manifest(image.manifest, image.media_type, image.digest)


def resolve_blob(artifact: ImageArtifact, digest: str) -> Blob | None:
    """
    Find the config or layer blob with ``digest``.

    Returns:
        Blob, or None if no image of the artifact has such a blob
    """
    images = artifact.images if isinstance(artifact, ImageIndex) else [artifact]

    for image in images:
        if image.config_digest == digest:
            return Blob(image, digest, image.config_media_type, len(image.config), is_config=True)

    for image in images:
        layer = image.layer(digest)
        if layer is not None:
            return Blob(image, digest, layer.media_type, layer.size, is_config=False)

    return None
