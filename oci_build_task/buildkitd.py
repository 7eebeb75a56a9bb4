"""
Build daemon supervision for the build task.

Starts buildkitd in the background, waits until its control socket answers,
and terminates it again. A Buildkitd is a context manager; leaving the
``with`` block always terminates the daemon.
"""

import ctypes
import logging
import os
import shutil
import signal
import subprocess
import sys
import time

import tomli_w

logger = logging.getLogger(__name__)

BUILDKITD = "buildkitd"
BUILDCTL = "buildctl"
ROOTLESSKIT = "rootlesskit"
SETUP_CGROUPS = "setup-cgroups"

PROBE_INTERVAL = 0.1  # seconds

PR_SET_PDEATHSIG = 1

_libc = ctypes.CDLL(None, use_errno=True) if sys.platform.startswith("linux") else None


class BuildkitdError(Exception):
    """Raised when buildkitd cannot be set up, started or stopped."""


class BuildkitdTimeoutError(BuildkitdError):
    """Raised when buildkitd does not answer within the configured timeout."""


def _die_with_parent():
    # Runs in the forked child before exec; only async-signal-safe work here.
    if _libc.prctl(PR_SET_PDEATHSIG, signal.SIGKILL) != 0:
        os._exit(127)


def buildctl(addr: str, *args: str, stdout=None, stderr=None) -> subprocess.CompletedProcess:
    """
    Run buildctl against the daemon at ``addr``.

    Output is inherited from this process unless ``stdout``/``stderr`` are
    given. The return code is not checked.
    """
    cmd = [BUILDCTL, f"--addr={addr}", *args]
    logger.debug(f"Running command: {' '.join(cmd)}")
    return subprocess.run(cmd, stdout=stdout, stderr=stderr, stdin=subprocess.DEVNULL)


def setup_cgroups() -> None:
    """
    Prepare cgroups and namespaces for the daemon.

    Raises:
        BuildkitdError: If the setup command is missing or fails
    """
    try:
        subprocess.run([SETUP_CGROUPS], check=True)
    except (OSError, subprocess.CalledProcessError) as e:
        raise BuildkitdError(f"setup cgroups: {e}") from e


def generate_config(config) -> str | None:
    """
    Write a buildkitd.toml when non-default daemon settings are requested.

    Currently the only such setting is REGISTRY_MIRRORS, written as mirrors
    for docker.io.

    Returns:
        Path of the written file, or None if the defaults suffice

    Raises:
        BuildkitdError: If the file cannot be written
    """
    if not config.REGISTRY_MIRRORS:
        return None

    settings = {"registry": {"docker.io": {"mirrors": list(config.REGISTRY_MIRRORS)}}}
    path = config.BUILDKITD_CONFIG_PATH

    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(settings, f)
    except OSError as e:
        raise BuildkitdError(f"generate config: {e}") from e

    logger.debug(f"Wrote buildkitd config to {path}")
    return path


def buildkitd_command(flags: list[str]) -> list[str]:
    """Launch directly when root, otherwise through rootlesskit."""
    if os.geteuid() == 0:
        return [BUILDKITD, *flags]
    return [ROOTLESSKIT, BUILDKITD, *flags]


def dump_log_file(log_path: str, out=None) -> None:
    """Copy the daemon log to ``out`` (stderr by default); failures are only logged."""
    out = out or sys.stderr
    try:
        with open(log_path, "r", errors="replace") as f:
            out.write("\n")
            shutil.copyfileobj(f, out)
        out.flush()
    except OSError as e:
        logger.warning(f"error streaming log file {log_path}: {e}")


class Buildkitd:
    """
    A running buildkitd process.

    Attributes:
        addr: Control address, e.g. unix:///tmp/buildkitd/buildkitd.sock
        process: subprocess.Popen of the daemon, None after cleanup
        log_path: File receiving the daemon's combined output
        root_dir: Daemon state directory, exclusively owned by this instance
        config_path: Generated buildkitd.toml, if any

    The control address is only usable between a successful spawn() and
    cleanup().
    """

    def __init__(self, addr, process, log_path, root_dir, config_path=None):
        self.addr = addr
        self.process = process
        self.log_path = log_path
        self.root_dir = root_dir
        self.config_path = config_path

    @classmethod
    def spawn(cls, config) -> "Buildkitd":
        """
        Start buildkitd and block until it accepts requests.

        Args:
            config: Config providing BUILDKITD_ROOT_DIR, BUILDKITD_CONFIG_PATH,
                BUILDKITD_TIMEOUT and REGISTRY_MIRRORS

        Returns:
            Ready Buildkitd

        Raises:
            BuildkitdError: If setup, directory creation or process start fails
            BuildkitdTimeoutError: If the daemon is not ready in time

        If the daemon exits while waiting, its log is dumped to stderr and
        the whole program exits with status 1. Whenever the wait fails, the
        daemon is terminated before the error propagates.
        """
        setup_cgroups()
        config_path = generate_config(config)

        root_dir = config.BUILDKITD_ROOT_DIR
        try:
            os.makedirs(root_dir, mode=0o755, exist_ok=True)
        except OSError as e:
            raise BuildkitdError(f"create root dir: {e}") from e

        sock_path = os.path.join(root_dir, "buildkitd.sock")
        log_path = os.path.join(root_dir, "buildkitd.log")
        addr = f"unix://{sock_path}"

        flags = ["--root", root_dir, "--addr", addr]
        if config_path:
            flags += ["--config", config_path]
        cmd = buildkitd_command(flags)
        logger.debug(f"Running command: {' '.join(cmd)}")

        try:
            with open(log_path, "ab") as log_file:
                process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    preexec_fn=_die_with_parent if _libc is not None else None,
                )
        except OSError as e:
            raise BuildkitdError(f"start buildkitd: {e}") from e

        daemon = cls(addr, process, log_path, root_dir, config_path)
        try:
            daemon.wait_ready(config.BUILDKITD_TIMEOUT)
        except BaseException:
            try:
                daemon.cleanup()
            except BuildkitdError as e:
                logger.warning(f"cleanup after failed start: {e}")
            raise
        return daemon

    def probe(self) -> bool:
        """Return True if the daemon answers a worker listing."""
        try:
            result = buildctl(self.addr, "debug", "workers", stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise BuildkitdError(f"run {BUILDCTL}: {e}") from e
        return result.returncode == 0

    def alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def wait_ready(self, timeout: float) -> None:
        """
        Poll the control socket every PROBE_INTERVAL seconds until it answers.

        Raises:
            BuildkitdTimeoutError: If ``timeout`` seconds pass first
        """
        deadline = time.monotonic() + timeout

        while not self.probe():
            if not self.alive():
                logger.warning(f"buildkitd process probe failed: exited with status {self.process.returncode}")
                logger.warning("dumping buildkitd logs due to probe failure")
                dump_log_file(self.log_path)
                sys.exit(1)

            if time.monotonic() >= deadline:
                raise BuildkitdTimeoutError(f"buildkitd not ready after {timeout}s; see {self.log_path}")

            logger.debug("waiting for buildkitd...")
            time.sleep(PROBE_INTERVAL)

        logger.debug("buildkitd started")

    def cleanup(self) -> None:
        """
        Terminate the daemon and wait for it to exit.

        Calling cleanup() again is a no-op.

        Raises:
            BuildkitdError: If the signal cannot be delivered or the wait fails
        """
        process, self.process = self.process, None
        if process is None:
            return

        try:
            process.terminate()
        except OSError as e:
            raise BuildkitdError(f"terminate buildkitd: {e}") from e

        try:
            process.wait()
        except (OSError, subprocess.SubprocessError) as e:
            raise BuildkitdError(f"wait buildkitd: {e}") from e

        logger.debug(f"buildkitd exited with status {process.returncode}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()

    def __repr__(self):
        return f"Buildkitd(addr={self.addr}, pid={self.process.pid if self.process else None})"
