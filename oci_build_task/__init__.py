"""
Build OCI images with buildkitd as a CI task.

Three components do the work:
    - buildkitd supervision: start, readiness probe, teardown
    - Local registry: serve preloaded image archives over the OCI
      Distribution API so builds can use them in FROM
    - Unpacker: flatten an image's layers into a root filesystem plus a
      metadata.json record

See app.py for the entry point.
"""

__version__ = "0.1.0"

# Import key components for convenience
from .config import Config
from .validation import compute_sha256, is_valid_digest, validate_digest
from .image import ImageIndex, ImageLoadError, LayerDescriptor, SingleImage, load_image
from .registry import LocalRegistry, RegistryError
from .buildkitd import Buildkitd, BuildkitdError, BuildkitdTimeoutError
from .unpack import ImageMetadata, UnpackError, unpack_image, write_image_metadata
from .task import TaskError, build, unpack_rootfs

__all__ = [
    "Config",
    "compute_sha256",
    "is_valid_digest",
    "validate_digest",
    "ImageIndex",
    "ImageLoadError",
    "LayerDescriptor",
    "SingleImage",
    "load_image",
    "LocalRegistry",
    "RegistryError",
    "Buildkitd",
    "BuildkitdError",
    "BuildkitdTimeoutError",
    "ImageMetadata",
    "UnpackError",
    "unpack_image",
    "write_image_metadata",
    "TaskError",
    "build",
    "unpack_rootfs",
]
