"""
Configuration module for the build task.

Loads all configuration from environment variables with sensible defaults.
A Config is built once by the entry point and passed explicitly to every
component; nothing in the package reads the environment on its own.
"""

import os
import tempfile

TRUTHY = {"1", "true", "yes", "on"}

BUILD_ARG_PREFIX = "BUILD_ARG_"
IMAGE_ARG_PREFIX = "IMAGE_ARG_"
LABEL_PREFIX = "LABEL_"
SECRET_PREFIX = "BUILDKIT_SECRET_"
SECRET_TEXT_PREFIX = "BUILDKIT_SECRETTEXT_"


def _as_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in TRUTHY


def _as_list(value: str | None) -> list[str]:
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _prefixed(env, prefix: str) -> list[str]:
    """Collect ``PREFIX_name=value`` variables as ``name=value`` strings."""
    return [f"{key[len(prefix):]}={value}" for key, value in sorted(env.items()) if key.startswith(prefix)]


def _prefixed_map(env, prefix: str) -> dict[str, str]:
    return {key[len(prefix):]: value for key, value in sorted(env.items()) if key.startswith(prefix)}


class Config:
    """
    Build task configuration from environment variables.

    Args:
        env: Mapping to read settings from. Defaults to ``os.environ``.

    Environment Variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO
        DEBUG: Verbose mode; forces DEBUG logging and hides progress bars. Default: false
        CONTEXT: Build context directory. Default: .
        DOCKERFILE: Path to the Dockerfile. Default: <CONTEXT>/Dockerfile
        TARGET: Build stage to target. Default: none
        TARGET_FILE: File containing the target stage. Default: none
        ADDITIONAL_TARGETS: Comma separated stages also exported, each to <OUTPUT_DIR>/<target>/image.tar
        BUILD_ARG_<name>: Build argument <name>=<value>
        BUILD_ARGS_FILE: File with one name=value build argument per line
        IMAGE_ARG_<name>: Image archive to preload and expose as build arg <name>
        LABEL_<name>: Image label <name>=<value>
        LABELS_FILE: File with one name=value label per line
        BUILDKIT_SECRET_<id>: File exposed to RUN --mount=type=secret,id=<id>
        BUILDKIT_SECRETTEXT_<id>: Literal secret value, written to SECRETS_DIR/<id>
        SECRETS_DIR: Where literal secrets are written. Default: <tmp>/buildkit-secrets
        BUILDKIT_SSH: SSH agent or key forwarded to the build (buildctl --ssh)
        BUILDKIT_ADD_HOSTS: Extra host entries, e.g. host=1.2.3.4
        DOCKER_USERNAME, DOCKER_PASSWORD, DOCKER_REGISTRY: Registry credentials
            written to ~/.docker/config.json when all three are set
        REGISTRY_MIRRORS: Comma separated docker.io mirrors. Default: none
        UNPACK_ROOTFS: Also produce rootfs/ and metadata.json. Default: false
        IMAGE_PLATFORM: Platform(s) to build for. Default: host platform
        TAG: Tag used to select the image to unpack. Default: latest
        TAG_FILE: File containing the tag; overrides TAG. Default: none
        OUTPUT_DIR: Directory receiving image/ and cache/. Default: current directory
        BUILDKITD_ROOT_DIR: Daemon state directory. Default: <tmp>/buildkitd
        BUILDKITD_CONFIG_PATH: Generated daemon config. Default: /etc/buildkit/buildkitd.toml
        BUILDKITD_TIMEOUT: Seconds to wait for the daemon to come up. Default: 300
        REGISTRY_HOST: Bind address of the local registry. Default: 127.0.0.1
    """

    def __init__(self, env=None):
        if env is None:
            env = os.environ

        # Logging
        self.DEBUG = _as_bool(env.get("DEBUG"))
        self.LOG_LEVEL = "DEBUG" if self.DEBUG else env.get("LOG_LEVEL", "INFO").upper()

        # Build inputs
        self.CONTEXT = env.get("CONTEXT", ".")
        self.DOCKERFILE = env.get("DOCKERFILE") or os.path.join(self.CONTEXT, "Dockerfile")
        self.TARGET = env.get("TARGET", "")
        self.TARGET_FILE = env.get("TARGET_FILE", "")
        self.ADDITIONAL_TARGETS = _as_list(env.get("ADDITIONAL_TARGETS"))
        self.BUILD_ARGS = _prefixed(env, BUILD_ARG_PREFIX)
        self.BUILD_ARGS_FILE = env.get("BUILD_ARGS_FILE", "")
        self.IMAGE_ARGS = _prefixed(env, IMAGE_ARG_PREFIX)
        self.LABELS = _prefixed(env, LABEL_PREFIX)
        self.LABELS_FILE = env.get("LABELS_FILE", "")
        self.REGISTRY_MIRRORS = _as_list(env.get("REGISTRY_MIRRORS"))
        self.IMAGE_PLATFORM = env.get("IMAGE_PLATFORM", "")
        self.BUILDKIT_ADD_HOSTS = env.get("BUILDKIT_ADD_HOSTS", "")

        # Secrets and credentials
        self.BUILDKIT_SECRETS = _prefixed_map(env, SECRET_PREFIX)
        self.BUILDKIT_SECRET_TEXTS = _prefixed_map(env, SECRET_TEXT_PREFIX)
        self.SECRETS_DIR = env.get("SECRETS_DIR") or os.path.join(tempfile.gettempdir(), "buildkit-secrets")
        self.BUILDKIT_SSH = env.get("BUILDKIT_SSH", "")
        self.DOCKER_USERNAME = env.get("DOCKER_USERNAME", "")
        self.DOCKER_PASSWORD = env.get("DOCKER_PASSWORD", "")
        self.DOCKER_REGISTRY = env.get("DOCKER_REGISTRY", "")

        # Outputs
        self.UNPACK_ROOTFS = _as_bool(env.get("UNPACK_ROOTFS"))
        self.TAG = env.get("TAG", "latest")
        self.TAG_FILE = env.get("TAG_FILE", "")
        self.OUTPUT_DIR = env.get("OUTPUT_DIR") or os.getcwd()

        # Build daemon
        self.BUILDKITD_ROOT_DIR = env.get("BUILDKITD_ROOT_DIR") or os.path.join(tempfile.gettempdir(), "buildkitd")
        self.BUILDKITD_CONFIG_PATH = env.get("BUILDKITD_CONFIG_PATH", "/etc/buildkit/buildkitd.toml")
        self.BUILDKITD_TIMEOUT = float(env.get("BUILDKITD_TIMEOUT", "300"))  # seconds

        # Local registry
        self.REGISTRY_HOST = env.get("REGISTRY_HOST", "127.0.0.1")

    def image_paths(self) -> dict[str, str]:
        """Return IMAGE_ARGS as a mapping of build arg name to archive path."""
        paths = {}
        for arg in self.IMAGE_ARGS:
            name, _, path = arg.partition("=")
            paths[name] = path
        return paths

    def __repr__(self):
        """String representation for logging."""
        return (
            f"Config(LOG_LEVEL={self.LOG_LEVEL}, "
            f"CONTEXT={self.CONTEXT}, "
            f"DOCKERFILE={self.DOCKERFILE}, "
            f"TARGET={self.TARGET}, "
            f"IMAGE_ARGS={len(self.IMAGE_ARGS)}, "
            f"SECRETS={len(self.BUILDKIT_SECRETS) + len(self.BUILDKIT_SECRET_TEXTS)}, "
            f"UNPACK_ROOTFS={self.UNPACK_ROOTFS}, "
            f"BUILDKITD_ROOT_DIR={self.BUILDKITD_ROOT_DIR})"
        )
