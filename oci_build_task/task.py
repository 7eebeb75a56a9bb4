"""
Build orchestration.

Wires the pieces together for one build:

    1. Write registry credentials and literal secrets, read the *_FILE inputs
    2. Start buildkitd (terminated again on every exit path)
    3. Serve preloaded IMAGE_ARG_* archives from the local registry and pass
       them to the build as ``name=localhost:<port>/name`` build args
    4. Export each ADDITIONAL_TARGETS stage to <target>/image.tar
    5. Run ``buildctl build`` with OCI output to image/image.tar and a local
       cache in cache/
    6. Optionally unpack the built image to image/rootfs + image/metadata.json
"""

import base64
import json
import logging
import os
import platform
from dataclasses import dataclass, field

from .buildkitd import Buildkitd, buildctl
from .image import REF_NAME_ANNOTATION, ImageLoadError, artifact_images, load_image
from .registry import LocalRegistry
from .unpack import unpack_image, write_image_metadata

logger = logging.getLogger(__name__)

OCI_ARCHIVE_NAME = "image.tar"

ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "386",
    "i686": "386",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
}


class TaskError(Exception):
    """Raised when the build cannot be configured, run or unpacked."""


@dataclass
class BuildInputs:
    """Build settings after the *_FILE inputs and literal secrets are resolved."""

    target: str = ""
    tag: str = "latest"
    build_args: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    secrets: dict[str, str] = field(default_factory=dict)  # id -> file path


def host_platform() -> tuple[str, str]:
    """Return (os, architecture) of this host in OCI platform terms."""
    machine = platform.machine().lower()
    return platform.system().lower(), ARCHITECTURES.get(machine, machine)


def _read_stripped(path: str, what: str) -> str:
    try:
        with open(path) as f:
            return f.read().strip()
    except OSError as e:
        raise TaskError(f"read {what} file: {e}") from e


def _read_lines(path: str, what: str) -> list[str]:
    content = _read_stripped(path, what)
    return [line.strip() for line in content.splitlines() if line.strip()]


def resolve_inputs(config) -> BuildInputs:
    """
    Return the effective build inputs.

    TARGET_FILE overrides TARGET and TAG_FILE overrides TAG. BUILD_ARGS_FILE
    and LABELS_FILE lines are appended to the BUILD_ARG_* and LABEL_*
    values. BUILDKIT_SECRETTEXT_* values are written to files so they can be
    passed like BUILDKIT_SECRET_* files.
    """
    inputs = BuildInputs(
        target=config.TARGET,
        tag=config.TAG,
        build_args=list(config.BUILD_ARGS),
        labels=list(config.LABELS),
        secrets=dict(config.BUILDKIT_SECRETS),
    )

    if config.TARGET_FILE:
        inputs.target = _read_stripped(config.TARGET_FILE, "target")

    if config.TAG_FILE:
        inputs.tag = _read_stripped(config.TAG_FILE, "tag")

    if config.BUILD_ARGS_FILE:
        inputs.build_args += _read_lines(config.BUILD_ARGS_FILE, "build args")

    if config.LABELS_FILE:
        inputs.labels += _read_lines(config.LABELS_FILE, "labels")

    inputs.secrets.update(write_secret_texts(config))
    return inputs


def write_secret_texts(config) -> dict[str, str]:
    """
    Write each BUILDKIT_SECRETTEXT_<id> value to SECRETS_DIR/<id>.

    Returns:
        Mapping of secret id to the written file

    Raises:
        TaskError: If an id is not a plain file name or a file cannot be written
    """
    paths = {}
    for secret_id, value in config.BUILDKIT_SECRET_TEXTS.items():
        if not secret_id or secret_id in (".", "..") or os.sep in secret_id:
            raise TaskError(f"invalid secret id '{secret_id}'")

        path = os.path.join(config.SECRETS_DIR, secret_id)
        try:
            os.makedirs(config.SECRETS_DIR, mode=0o700, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(value)
        except OSError as e:
            raise TaskError(f"write secret '{secret_id}': {e}") from e

        logger.debug(f"wrote secret '{secret_id}' to {path}")
        paths[secret_id] = path
    return paths


def write_docker_credentials(config, home: str | None = None) -> str | None:
    """
    Write DOCKER_USERNAME/DOCKER_PASSWORD for DOCKER_REGISTRY to
    ``<home>/.docker/config.json``, where buildctl picks them up.

    Returns:
        Path of the written file, or None unless all three are set

    Raises:
        TaskError: If the file cannot be written
    """
    if not (config.DOCKER_USERNAME and config.DOCKER_PASSWORD and config.DOCKER_REGISTRY):
        logger.debug("No docker credentials in environment variables")
        return None

    credentials = f"{config.DOCKER_USERNAME}:{config.DOCKER_PASSWORD}".encode("utf-8")
    auths = {
        "auths": {
            config.DOCKER_REGISTRY: {
                "username": config.DOCKER_USERNAME,
                "password": config.DOCKER_PASSWORD,
                "auth": base64.b64encode(credentials).decode("ascii"),
            }
        }
    }

    docker_dir = os.path.join(home or os.path.expanduser("~"), ".docker")
    path = os.path.join(docker_dir, "config.json")
    try:
        os.makedirs(docker_dir, mode=0o700, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(auths, f, indent=1)
    except OSError as e:
        raise TaskError(f"write docker credentials: {e}") from e

    logger.info(f"Wrote credentials for {config.DOCKER_REGISTRY} to {path}")
    return path


def buildctl_args(config, inputs: BuildInputs, target: str, cache_dir: str, oci_path: str) -> list[str]:
    dockerfile_dir = os.path.dirname(config.DOCKERFILE) or "."
    args = [
        "build",
        "--frontend", "dockerfile.v0",
        "--local", f"context={config.CONTEXT}",
        "--local", f"dockerfile={dockerfile_dir}",
        "--opt", f"filename={os.path.basename(config.DOCKERFILE)}",
        "--export-cache", f"type=local,mode=min,dest={cache_dir}",
        "--output", f"type=oci,dest={oci_path}",
    ]

    if os.path.exists(os.path.join(cache_dir, "index.json")):
        args += ["--import-cache", f"type=local,src={cache_dir}"]

    if target:
        args += ["--opt", f"target={target}"]

    if config.IMAGE_PLATFORM:
        args += ["--opt", f"platform={config.IMAGE_PLATFORM}"]

    if config.BUILDKIT_ADD_HOSTS:
        args += ["--opt", f"add-hosts={config.BUILDKIT_ADD_HOSTS}"]

    if config.BUILDKIT_SSH:
        args += ["--ssh", config.BUILDKIT_SSH]

    for secret_id, path in sorted(inputs.secrets.items()):
        args += ["--secret", f"id={secret_id},src={path}"]

    for label in inputs.labels:
        args += ["--opt", f"label:{label}"]

    for arg in inputs.build_args:
        args += ["--opt", f"build-arg:{arg}"]

    return args


def _run_build(addr: str, args: list[str], what: str) -> None:
    logger.debug(f"building {what} with buildctl args: {args}")

    try:
        result = buildctl(addr, *args)
    except OSError as e:
        raise TaskError(f"run buildctl: {e}") from e

    if result.returncode != 0:
        raise TaskError(f"build {what}: buildctl exited with status {result.returncode}")


def build(config) -> dict:
    """
    Run one build as described by ``config``.

    Returns:
        ``{"outputs": ["image", "cache", *ADDITIONAL_TARGETS]}``

    Raises:
        TaskError: If an input file cannot be read, buildctl fails or the
            unpack target cannot be chosen
        BuildkitdError: If the daemon cannot be started
        RegistryError: If an IMAGE_ARG_* archive cannot be served
        UnpackError: If the rootfs cannot be written
    """
    image_dir = os.path.join(config.OUTPUT_DIR, "image")
    cache_dir = os.path.join(config.OUTPUT_DIR, "cache")
    oci_path = os.path.join(image_dir, OCI_ARCHIVE_NAME)
    for target in config.ADDITIONAL_TARGETS:
        if target in (".", "..", "image", "cache") or os.sep in target:
            raise TaskError(f"invalid additional target '{target}': used as an output folder name")
    target_dirs = {target: os.path.join(config.OUTPUT_DIR, target) for target in config.ADDITIONAL_TARGETS}

    try:
        for path in [image_dir, cache_dir, *target_dirs.values()]:
            os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise TaskError(f"create output folders: {e}") from e

    write_docker_credentials(config)
    inputs = resolve_inputs(config)

    with Buildkitd.spawn(config) as buildkitd:
        if config.IMAGE_ARGS:
            registry = LocalRegistry.load(config.image_paths())
            port = registry.serve(config.REGISTRY_HOST)
            inputs.build_args += registry.build_args(port)

        for target, target_dir in target_dirs.items():
            target_path = os.path.join(target_dir, OCI_ARCHIVE_NAME)
            _run_build(buildkitd.addr, buildctl_args(config, inputs, target, cache_dir, target_path), target)

        args = buildctl_args(config, inputs, inputs.target, cache_dir, oci_path)
        _run_build(buildkitd.addr, args, inputs.target or "image")

    if config.UNPACK_ROOTFS:
        unpack_rootfs(image_dir, oci_path, config, tag=inputs.tag)

    return {"outputs": ["image", "cache", *target_dirs]}


def select_image(artifact, tag: str, target_platform: tuple[str, str] | None = None):
    """
    Pick the one image to unpack from ``artifact``.

    An image is a candidate when its platform (if declared) matches
    ``target_platform`` (the host by default) and its ref name annotation
    (if present) equals ``tag``.

    Raises:
        TaskError: If no image or more than one image qualifies
    """
    os_name, architecture = target_platform or host_platform()
    selected = None

    for image in artifact_images(artifact):
        if image.platform is not None:
            if image.platform.get("os") != os_name or image.platform.get("architecture") != architecture:
                continue

        ref_name = image.annotations.get(REF_NAME_ANNOTATION)
        if ref_name is not None and ref_name != tag:
            continue

        if selected is not None:
            raise TaskError(f"found another image to unpack ({image.digest}) after already selecting {selected.digest}")

        logger.debug(f"selected image {image.digest}: platform={image.platform}, annotations={image.annotations}")
        selected = image

    if selected is None:
        raise TaskError(f"could not determine image to unpack for {os_name}/{architecture} tag '{tag}'")

    return selected


def unpack_rootfs(dest: str, oci_image_path: str, config, tag: str | None = None):
    """
    Unpack the built image into ``dest``/rootfs and write ``dest``/metadata.json.

    The image is selected by ``tag``, falling back to Config.TAG.

    Returns:
        ImageMetadata written to metadata.json
    """
    logger.debug(f"unpacking {oci_image_path}")

    try:
        artifact = load_image(oci_image_path)
    except ImageLoadError as e:
        raise TaskError(f"load built image: {e}") from e

    image = select_image(artifact, tag if tag is not None else config.TAG)
    unpack_image(os.path.join(dest, "rootfs"), image, debug=config.DEBUG)
    return write_image_metadata(os.path.join(dest, "metadata.json"), image)
