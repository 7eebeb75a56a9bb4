"""
Root filesystem unpacking for the build task.

Flattens the layers of an image into a single directory tree, oldest layer
first, so each path ends up as the newest layer left it:

    - ``.wh.<name>`` entries delete <name> and are never written themselves
    - an existing path is replaced unless both it and the entry are
      directories, in which case the directory is merged
    - character and block devices are skipped; they cannot be created
      without privileges
    - ownership is only restored when running as root
    - symlinks met on the way to an entry are resolved inside the
      destination, as if it were the filesystem root

Also writes the small metadata record (env, user) consumed by the CI runtime.
"""

import json
import logging
import os
import shutil
import tarfile
import zlib
from dataclasses import asdict, dataclass, field

from rich.console import Console
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn

from .validation import split_digest

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"

MAX_SYMLINK_HOPS = 255


class UnpackError(Exception):
    """Raised when a layer cannot be read or written to the destination."""


@dataclass
class ImageMetadata:
    env: list[str] = field(default_factory=list)
    user: str = ""


def unpack_image(dest: str, image, debug: bool = False) -> None:
    """
    Unpack every layer of ``image`` into ``dest``.

    Args:
        dest: Destination root; created if missing
        image: SingleImage to unpack
        debug: Hide the progress display (per-entry debug logs are shown instead)

    Raises:
        UnpackError: On any read or write failure. Partial output is left in
            place and should be considered invalid.
    """
    chown = os.geteuid() == 0
    os.makedirs(dest, exist_ok=True)
    dir_modes = {}

    progress = Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        DownloadColumn(),
        console=Console(stderr=True),
        disable=debug,
    )

    with progress:
        tasks = [
            progress.add_task(f"[bright_black]{split_digest(layer.digest)[1][:12]}", total=layer.size)
            for layer in image.layers
        ]

        for layer, task_id in zip(image.layers, tasks):
            logger.debug(f"extracting layer {layer.index + 1} of {len(image.layers)}: {layer.digest}")
            try:
                with image.open_blob(layer.digest) as blob:
                    with progress.wrap_file(blob, total=layer.size, task_id=task_id) as reader:
                        extract_layer(dest, reader, chown=chown, dir_modes=dir_modes)
            except (UnpackError, OSError, tarfile.TarError, zlib.error, EOFError) as e:
                raise UnpackError(f"layer {layer.digest}: {e}") from e

    try:
        _apply_dir_modes(dir_modes)
    except OSError as e:
        raise UnpackError(f"set directory modes: {e}") from e


def extract_layer(dest: str, fileobj, chown: bool = False, dir_modes: dict | None = None) -> None:
    """
    Apply one layer tar stream (plain, gzip, bzip2 or xz) on top of ``dest``.

    Directory modes are collected into ``dir_modes`` instead of being applied
    right away, so read-only directories can still receive later entries.
    When ``dir_modes`` is None they are applied at the end of this layer.

    Raises:
        UnpackError: If an existing path cannot be replaced or an entry
            cannot be written
    """
    apply_modes = dir_modes is None
    if apply_modes:
        dir_modes = {}

    dest = os.path.abspath(dest)

    with tarfile.open(fileobj=fileobj, mode="r|*") as tar:
        for member in tar:
            path = _entry_path(dest, member.name)
            base = os.path.basename(path)
            parent = os.path.dirname(path)

            logger.debug(f"unpacking {member.name}")

            if path == dest:
                # the root entry; merge into the existing destination
                os.makedirs(dest, exist_ok=True)
                continue

            if base.startswith(WHITEOUT_PREFIX):
                if base == OPAQUE_WHITEOUT:
                    logger.debug(f"ignoring opaque marker in {parent}")
                    continue
                removed = os.path.join(parent, base[len(WHITEOUT_PREFIX):])
                logger.debug(f"removing {removed}")
                try:
                    _remove_all(removed)
                except OSError as e:
                    logger.debug(f"failed to remove {removed}: {e}")
                dir_modes.pop(removed, None)
                continue

            if member.ischr() or member.isblk():
                logger.debug(f"skipping device {member.name}")
                continue

            if member.issym():
                logger.debug(f"symlinking to {member.linkname}")

            if member.islnk():
                logger.debug(f"hardlinking to {member.linkname}")

            if os.path.lexists(path):
                is_dir = os.path.isdir(path) and not os.path.islink(path)
                if not (is_dir and member.isdir()):
                    logger.debug("removing existing path")
                    try:
                        _remove_all(path)
                    except OSError as e:
                        raise UnpackError(f"remove {member.name}: {e}") from e

            try:
                _extract_entry(tar, member, dest, path, chown, dir_modes)
            except OSError as e:
                raise UnpackError(f"extract entry {member.name}: {e}") from e

    if apply_modes:
        _apply_dir_modes(dir_modes)


def _apply_dir_modes(dir_modes: dict) -> None:
    # Deepest first so a read-only parent is locked last
    for path, mode in sorted(dir_modes.items(), key=lambda item: item[0].count(os.sep), reverse=True):
        if os.path.isdir(path) and not os.path.islink(path):
            os.chmod(path, mode)


def _entry_path(dest: str, name: str) -> str:
    """
    Map a tar entry name to its path under ``dest``.

    Symlinks in the parent directories are followed inside ``dest``; the last
    component is never followed, so the entry replaces whatever is there.
    """
    clean = os.path.normpath("/" + name).lstrip("/")
    if not clean:
        return dest
    parent, base = os.path.split(clean)
    return os.path.join(resolve_in_root(dest, parent), base)


def resolve_in_root(root: str, name: str) -> str:
    """
    Resolve ``name`` under ``root`` as if ``root`` were the filesystem root.

    Absolute symlink targets restart at ``root`` and ``..`` stops at it, so
    the result never leaves ``root``. Missing components are kept as given.

    Raises:
        UnpackError: If more than MAX_SYMLINK_HOPS symlinks are followed
    """
    pending = _components(name)
    resolved = []
    hops = 0

    while pending:
        part = pending.pop(0)
        if part == "..":
            if resolved:
                resolved.pop()
            continue

        current = os.path.join(root, *resolved, part)
        if not os.path.islink(current):
            resolved.append(part)
            continue

        hops += 1
        if hops > MAX_SYMLINK_HOPS:
            raise UnpackError(f"{name}: too many levels of symbolic links")

        target = os.readlink(current)
        if target.startswith("/"):
            resolved = []
        pending = _components(target) + pending

    return os.path.join(root, *resolved)


def _components(path: str) -> list[str]:
    return [part for part in path.split("/") if part not in ("", ".")]


def _remove_all(path: str) -> None:
    """Remove ``path`` whatever it is; a missing path is not an error."""
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.unlink(path)


def _extract_entry(tar, member, dest, path, chown, dir_modes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = member.mode & 0o7777

    if member.isdir():
        os.makedirs(path, exist_ok=True)
        dir_modes[path] = mode
    elif member.isfile():
        src = tar.extractfile(member)
        with open(path, "wb") as dst:
            shutil.copyfileobj(src, dst)
    elif member.issym():
        os.symlink(member.linkname, path)
    elif member.islnk():
        os.link(_entry_path(dest, member.linkname), path, follow_symlinks=False)
    elif member.isfifo():
        os.mkfifo(path)
    else:
        logger.debug(f"skipping unsupported entry type {member.type!r}: {member.name}")
        return

    if chown:
        os.lchown(path, member.uid, member.gid)

    if member.issym() or member.islnk():
        return

    if not member.isdir():
        os.chmod(path, mode)
    os.utime(path, (member.mtime, member.mtime))


def image_metadata(image) -> ImageMetadata:
    """
    Read env and user from the image config.

    Each falls back to the legacy ``container_config`` section when the
    primary ``config`` value is empty.
    """
    cfg = image.config_file()
    primary = cfg.get("config") or {}
    legacy = cfg.get("container_config") or {}

    return ImageMetadata(
        env=list(primary.get("Env") or legacy.get("Env") or []),
        user=primary.get("User") or legacy.get("User") or "",
    )


def write_image_metadata(path: str, image) -> ImageMetadata:
    """
    Write ``{"env": [...], "user": "..."}`` for ``image`` to ``path``.

    Raises:
        UnpackError: If the config cannot be parsed or the file written
    """
    try:
        meta = image_metadata(image)
        with open(path, "w") as f:
            json.dump(asdict(meta), f)
    except (OSError, ValueError) as e:
        raise UnpackError(f"write image metadata: {e}") from e

    logger.debug(f"Wrote image metadata to {path}: user='{meta.user}', {len(meta.env)} env vars")
    return meta
