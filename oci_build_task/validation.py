"""
Digest and name helpers for the build task.

Provides digest computation and validation of digests and image names,
shared by the image loader, the local registry and the unpacker.
"""

import hashlib
import logging
import re

from flask import abort

logger = logging.getLogger(__name__)

DIGEST_PATTERN = re.compile(r"^(sha256:[a-f0-9]{64}|sha512:[a-f0-9]{128})$")
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9._/-]+$")

MAX_IMAGE_NAME_LENGTH = 255

CHUNK_SIZE = 1024 * 1024


def compute_sha256(data: bytes) -> str:
    """
    Compute SHA256 digest in OCI/Docker format.

    Args:
        data: Bytes to hash

    Returns:
        String in format "sha256:<64 hex chars>"

    Example:
        >>> compute_sha256(b"hello")
        'sha256:2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    h = hashlib.sha256()
    h.update(data)
    return "sha256:" + h.hexdigest()


def sha256_stream(stream) -> tuple[str, int]:
    """
    Hash a readable binary stream without holding it in memory.

    Returns:
        Tuple of (digest, size in bytes)
    """
    h = hashlib.sha256()
    size = 0
    while True:
        chunk = stream.read(CHUNK_SIZE)
        if not chunk:
            break
        h.update(chunk)
        size += len(chunk)
    return "sha256:" + h.hexdigest(), size


def is_valid_digest(reference: str) -> bool:
    """Return True if ``reference`` is a well-formed sha256/sha512 digest."""
    return bool(DIGEST_PATTERN.match(reference or ""))


def is_valid_image_name(name: str) -> bool:
    """
    Return True if ``name`` can be used as a repository path.

    Validation Rules:
        - Must be 1-255 characters (MAX_IMAGE_NAME_LENGTH)
        - Only alphanumeric characters, dots (.), hyphens (-), underscores (_), and slashes (/)

    Examples:
        >>> is_valid_image_name("base_image")
        True
        >>> is_valid_image_name("base image")
        False
    """
    if not name or len(name) > MAX_IMAGE_NAME_LENGTH:
        logger.warning(f"Invalid image name length: {len(name or '')}")
        return False

    if not NAME_PATTERN.match(name):
        logger.warning(f"Invalid image name format: {name}")
        return False

    return True


def validate_digest(digest: str) -> None:
    """
    Validate digest format per OCI specification.

    Raises:
        HTTPException: 500 Internal Server Error if digest is malformed

    Format:
        Must match: sha256:<64 lowercase hex> or sha512:<128 lowercase hex>
    """
    if not is_valid_digest(digest):
        logger.error(f"Invalid digest format: {digest}")
        abort(500, "Invalid digest: must be <algorithm>:<hex>")

    logger.debug(f"Digest validated: {digest}")


def split_digest(digest: str) -> tuple[str, str]:
    """
    Split a digest into (algorithm, hex).

    Example:
        >>> split_digest("sha256:abc")
        ('sha256', 'abc')
    """
    algorithm, _, encoded = digest.partition(":")
    return algorithm, encoded
