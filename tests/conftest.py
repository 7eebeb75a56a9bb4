"""Test configuration and fixtures."""

import pytest

from oci_build_task.config import Config
from tests.helpers import (
    directory,
    file,
    make_config,
    make_layer,
    whiteout,
    write_docker_archive,
    write_image_blobs,
    write_oci_layout,
)


@pytest.fixture
def base_layers():
    """Two layers: the first adds /etc/app.conf, the second whites it out."""
    return [
        make_layer(directory("etc"), file("etc/app.conf", b"setting=1\n"), file("etc/keep.conf", b"keep\n")),
        make_layer(whiteout("etc/app.conf")),
    ]


@pytest.fixture
def docker_archive(tmp_path, base_layers):
    """A docker-save tarball with env and user set."""
    config = make_config(env=["PATH=/usr/bin", "A=b"], user="app")
    return write_docker_archive(tmp_path / "a.tar", base_layers, config)


@pytest.fixture
def multi_platform_layout(tmp_path):
    """An OCI layout directory indexing an amd64 and an arm64 image."""
    root = tmp_path / "layout"
    amd64 = write_image_blobs(root, [make_layer(file("arch", b"amd64"))], make_config(architecture="amd64"))
    arm64 = write_image_blobs(root, [make_layer(file("arch", b"arm64"))], make_config(architecture="arm64"))
    amd64["platform"] = {"os": "linux", "architecture": "amd64"}
    arm64["platform"] = {"os": "linux", "architecture": "arm64"}
    index = write_oci_layout(root, [amd64, arm64])
    return {"path": str(root), "index": index, "amd64": amd64, "arm64": arm64}


@pytest.fixture
def config(tmp_path):
    """Config isolated from the real environment."""
    return Config({
        "BUILDKITD_ROOT_DIR": str(tmp_path / "buildkitd"),
        "BUILDKITD_CONFIG_PATH": str(tmp_path / "config" / "buildkitd.toml"),
        "BUILDKITD_TIMEOUT": "5",
        "OUTPUT_DIR": str(tmp_path / "out"),
        "DEBUG": "true",
    })
