"""
Flask application and OCI registry endpoints.

Implements the read-only subset of the OCI Distribution Specification needed
to pull preloaded images from the local registry.
"""

import logging
from contextlib import ExitStack

from flask import Blueprint, Flask, Response, abort, current_app, request
from werkzeug.exceptions import HTTPException

from .registry import resolve_blob, resolve_manifest
from .validation import CHUNK_SIZE, validate_digest

logger = logging.getLogger(__name__)

bp = Blueprint("registry", __name__)


def create_app(registry) -> Flask:
    """
    Create the Flask application serving ``registry``.

    Args:
        registry: LocalRegistry to serve; read-only for the app's lifetime

    Returns:
        Flask application
    """
    app = Flask(__name__)
    app.config["LOCAL_REGISTRY"] = registry
    app.register_blueprint(bp)
    app.register_error_handler(404, not_found)
    app.register_error_handler(Exception, internal_error)
    return app


def _lookup(name):
    entry = current_app.config["LOCAL_REGISTRY"].lookup(name)
    if entry is None:
        logger.info(f"Unknown image requested: '{name}'")
        abort(404)
    return entry


# -------------------------------
# Error handlers
# -------------------------------


def not_found(error):
    if request.url_rule is None:
        logger.warning(f"Unknown request: method={request.method}, path={request.path}")
    return Response(status=404)


def internal_error(error):
    if isinstance(error, HTTPException):
        return error
    logger.error(f"Request failed: method={request.method}, path={request.path}: {error}", exc_info=error)
    return Response(status=500)


# -------------------------------
# Registry Endpoints
# -------------------------------


@bp.route("/v2/")
def v2_root():
    """
    OCI Distribution API version check endpoint.

    Headers:
        Docker-Distribution-API-Version: registry/2.0
    """
    logger.debug("Registry v2 API root accessed")
    resp = Response(status=200)
    resp.headers["Docker-Distribution-API-Version"] = "registry/2.0"
    return resp


@bp.route("/v2/<path:name>/manifests/<reference>", methods=["GET", "HEAD"])
def get_manifest(name, reference):
    """
    Get or check an image manifest.

    Args:
        name: Registered image name (case-insensitive)
        reference: Tag or digest

    Response Headers:
        Content-Type: Media type declared by the manifest
        Content-Length: Size of manifest in bytes
        Docker-Content-Digest: Digest of the manifest bytes

    Raises:
        404: Unknown name, or digest not present in the index
    """
    entry = _lookup(name)
    logger.info(f"Manifest requested: image='{name}', reference='{reference}', method={request.method}")

    manifest = resolve_manifest(entry.artifact, reference)
    if manifest is None:
        logger.warning(f"Manifest not found: image='{name}', reference='{reference}'")
        abort(404)

    resp = Response(b"" if request.method == "HEAD" else manifest.body, status=200)
    resp.headers["Content-Type"] = manifest.media_type
    resp.headers["Content-Length"] = str(len(manifest.body))
    resp.headers["Docker-Content-Digest"] = manifest.digest
    return resp


@bp.route("/v2/<path:name>/blobs/<digest>", methods=["GET", "HEAD"])
def get_blob(name, digest):
    """
    Get or check a config or layer blob by digest.

    Layers are streamed from the archive in chunks.

    Raises:
        404: Unknown name or blob
        500: Malformed digest
    """
    entry = _lookup(name)
    validate_digest(digest)
    logger.info(f"Blob requested: image='{name}', digest='{digest}', method={request.method}")

    blob = resolve_blob(entry.artifact, digest)
    if blob is None:
        logger.warning(f"Blob not found: image='{name}', digest='{digest}'")
        abort(404)

    if request.method == "HEAD":
        body = b""
    elif blob.is_config:
        body = blob.image.config
    else:
        body = _stream(blob.image, digest)

    resp = Response(body, status=200)
    resp.headers["Content-Type"] = blob.media_type
    resp.headers["Content-Length"] = str(blob.size)
    resp.headers["Docker-Content-Digest"] = digest
    return resp


def _stream(image, digest):
    # Open before the response starts so a missing archive becomes a 500
    stack = ExitStack()
    f = stack.enter_context(image.open_blob(digest))

    def generate():
        with stack:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    return generate()
