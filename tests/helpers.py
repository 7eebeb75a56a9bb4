"""Helpers that synthesize image archives for tests."""

import gzip
import hashlib
import io
import json
import os
import tarfile

MTIME = 1700000000


def digest_of(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


# -------------------------------
# Layer entries
# -------------------------------


def file(name, data=b"", mode=0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    return info, data


def directory(name, mode=0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    return info, None


def symlink(name, target):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = target
    info.mode = 0o777
    return info, None


def hardlink(name, target):
    info = tarfile.TarInfo(name)
    info.type = tarfile.LNKTYPE
    info.linkname = target
    info.mode = 0o644
    return info, None


def device(name):
    info = tarfile.TarInfo(name)
    info.type = tarfile.CHRTYPE
    info.devmajor = 1
    info.devminor = 3
    info.mode = 0o666
    return info, None


def whiteout(path):
    parent, base = os.path.split(path)
    return file(os.path.join(parent, ".wh." + base))


def make_layer(*entries, compress=True) -> bytes:
    """Build a layer tarball from entry helpers, gzip-compressed by default."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for info, data in entries:
            info.mtime = MTIME
            tar.addfile(info, io.BytesIO(data) if data is not None else None)
    raw = buf.getvalue()
    return gzip.compress(raw, mtime=0) if compress else raw


def make_config(env=None, user="", legacy_env=None, legacy_user="", os_name="linux", architecture="amd64") -> bytes:
    config = {
        "architecture": architecture,
        "os": os_name,
        "config": {"Env": env, "User": user},
        "container_config": {"Env": legacy_env, "User": legacy_user},
        "rootfs": {"type": "layers", "diff_ids": []},
    }
    return json.dumps(config).encode("utf-8")


# -------------------------------
# Archives
# -------------------------------


def _add_bytes(tar, name, data):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mtime = MTIME
    tar.addfile(info, io.BytesIO(data))


def write_docker_archive(path, layers, config=None, images=1) -> str:
    """Write a docker-save style tarball with ``layers`` (oldest first)."""
    config = config if config is not None else make_config()
    config_name = digest_of(config).split(":", 1)[1] + ".json"

    layer_names = [f"layer{idx}/layer.tar" for idx in range(len(layers))]
    manifest = [{"Config": config_name, "RepoTags": ["test:latest"], "Layers": layer_names}] * images

    with tarfile.open(path, "w") as tar:
        _add_bytes(tar, config_name, config)
        for name, data in zip(layer_names, layers):
            _add_bytes(tar, name, data)
        _add_bytes(tar, "manifest.json", json.dumps(manifest).encode("utf-8"))
    return str(path)


def _write_blob(root, data: bytes) -> str:
    digest = digest_of(data)
    blob_dir = os.path.join(root, "blobs", "sha256")
    os.makedirs(blob_dir, exist_ok=True)
    with open(os.path.join(blob_dir, digest.split(":", 1)[1]), "wb") as f:
        f.write(data)
    return digest


def write_image_blobs(root, layers, config=None) -> dict:
    """Write config, layers and an OCI manifest as blobs; return the manifest descriptor."""
    config = config if config is not None else make_config()
    config_digest = _write_blob(root, config)
    layer_descs = []
    for data in layers:
        layer_descs.append({
            "mediaType": "application/vnd.oci.image.layer.v1.tar+gzip",
            "digest": _write_blob(root, data),
            "size": len(data),
        })
    manifest = json.dumps({
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "config": {
            "mediaType": "application/vnd.oci.image.config.v1+json",
            "digest": config_digest,
            "size": len(config),
        },
        "layers": layer_descs,
    }).encode("utf-8")
    return {
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "digest": _write_blob(root, manifest),
        "size": len(manifest),
    }


def write_oci_layout(root, descriptors, nested=False, annotations=None) -> bytes:
    """
    Write index.json for ``descriptors`` under ``root``.

    With ``nested``, index.json points at a single inner index that lists the
    descriptors. Returns the bytes of the index that lists the descriptors.
    """
    os.makedirs(root, exist_ok=True)
    with open(os.path.join(root, "oci-layout"), "w") as f:
        json.dump({"imageLayoutVersion": "1.0.0"}, f)

    index = json.dumps({
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.index.v1+json",
        "manifests": descriptors,
    }).encode("utf-8")

    if nested:
        outer = {
            "mediaType": "application/vnd.oci.image.index.v1+json",
            "digest": _write_blob(root, index),
            "size": len(index),
        }
        if annotations:
            outer["annotations"] = annotations
        outer_index = json.dumps({"schemaVersion": 2, "manifests": [outer]}).encode("utf-8")
        with open(os.path.join(root, "index.json"), "wb") as f:
            f.write(outer_index)
    else:
        with open(os.path.join(root, "index.json"), "wb") as f:
            f.write(index)

    return index


def write_oci_archive(path, layout_dir) -> str:
    """Pack an OCI layout directory into a tarball."""
    with tarfile.open(path, "w") as tar:
        for name in sorted(os.listdir(layout_dir)):
            tar.add(os.path.join(layout_dir, name), arcname=name)
    return str(path)


def tree(root) -> dict:
    """Map every path under ``root`` to its kind and content, for comparisons."""
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            full = os.path.join(dirpath, name)
            rel = os.path.relpath(full, root)
            if os.path.islink(full):
                result[rel] = ("link", os.readlink(full))
            elif os.path.isdir(full):
                result[rel] = ("dir", None)
            else:
                with open(full, "rb") as f:
                    result[rel] = ("file", f.read())
    return result
