"""
Build OCI images with buildkitd as a CI task.

Starts buildkitd, optionally serves preloaded image archives from a local
read-only registry so the Dockerfile can use them in FROM, runs the build,
and optionally unpacks the result into a flat root filesystem.

Features:
    - buildkitd supervision with readiness probing and guaranteed teardown
    - Local OCI Distribution registry for IMAGE_ARG_* archives
    - docker-save tarballs, OCI layout tarballs and OCI layout directories
    - Root filesystem unpacking with whiteout handling
    - Configurable via environment variables

Outputs:
    image/image.tar      OCI image archive
    image/rootfs/        Unpacked root filesystem (UNPACK_ROOTFS=true)
    image/metadata.json  {"env": [...], "user": "..."} (UNPACK_ROOTFS=true)
    cache/               Local build cache

Environment Variables:
    LOG_LEVEL, DEBUG, CONTEXT, DOCKERFILE, TARGET, TARGET_FILE,
    BUILD_ARG_*, BUILD_ARGS_FILE, IMAGE_ARG_*, REGISTRY_MIRRORS,
    UNPACK_ROOTFS, IMAGE_PLATFORM, TAG, OUTPUT_DIR, BUILDKITD_ROOT_DIR,
    BUILDKITD_CONFIG_PATH, BUILDKITD_TIMEOUT, REGISTRY_HOST

Example:
    $ CONTEXT=. IMAGE_ARG_base_image=/tmp/base.tar python app.py
"""

import logging
import sys

from oci_build_task.buildkitd import BuildkitdError
from oci_build_task.config import Config
from oci_build_task.image import ImageLoadError
from oci_build_task.registry import RegistryError
from oci_build_task.task import TaskError, build
from oci_build_task.unpack import UnpackError

logger = logging.getLogger(__name__)


def main(env=None) -> int:
    """Main entry point for the build task."""
    config = Config(env)

    # Configure logging
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger.info(f"Configuration: {config}")

    try:
        response = build(config)
    except (TaskError, BuildkitdError, RegistryError, ImageLoadError, UnpackError) as e:
        logger.error(f"Build failed: {e}")
        return 1

    logger.info(f"Build complete, outputs: {', '.join(response['outputs'])}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
