"""Execution of commands inside the installed system, and its teardown."""

import logging
import os
from pathlib import Path
import time
from typing import Any, Callable, Sequence

from installubuntuonzfs.cmd import Runner, ismount, makedirs, writetext
from installubuntuonzfs.retry import TimedOut, wait_for
from installubuntuonzfs.textfiles import ensure_line
from installubuntuonzfs.zfs import export_pools

_LOGGER = logging.getLogger(__name__)

VIRTUAL_FILESYSTEMS = ("proc", "sys", "dev")
NAMESERVER_LINE = "nameserver 8.8.8.8"
UNMOUNT_TIMEOUT = 5
UNMOUNT_COMMAND = ["umount", "--recursive", "--force", "--lazy"]


class TargetNotMounted(Exception):
    """The target root is not mounted."""


class TargetNotBound(Exception):
    """A command was run in the target outside of its scope."""


def unbind_virtual_filesystems(
    runner: Runner,
    root: Path,
    timeout: float = UNMOUNT_TIMEOUT,
    clock: Callable[[], float] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> None:
    """Unmount the virtual file systems bound under root.

    Bind mounts do not always go away on the first try, so the unmount is
    issued once more for those still mounted after the wait.
    """
    mountpoints = [root / vfs for vfs in reversed(VIRTUAL_FILESYSTEMS)]
    for mountpoint in mountpoints:
        if ismount(runner, mountpoint):
            runner.check_call(UNMOUNT_COMMAND + [str(mountpoint)])

    _LOGGER.info("Waiting for virtual filesystems to unmount")
    clock = clock or time.monotonic
    start = clock()
    for mountpoint in mountpoints:
        remaining = max(0.0, timeout - (clock() - start))
        try:
            wait_for(
                lambda m=mountpoint: not ismount(runner, m),  # type: ignore
                remaining,
                what=f"{mountpoint} to be unmounted",
                clock=clock,
                sleep=sleep,
            )
        except TimedOut as e:
            _LOGGER.debug("%s", e)

    for mountpoint in mountpoints:
        if ismount(runner, mountpoint):
            _LOGGER.warning("Re-issuing umount for %s", mountpoint)
            runner.check_call(UNMOUNT_COMMAND + [str(mountpoint)])


def prepare_for_system_exit(runner: Runner, root: Path, **kwargs: Any) -> None:
    """Release everything under root, then export all pools."""
    unbind_virtual_filesystems(runner, root, **kwargs)
    _LOGGER.info("Exporting pools")
    export_pools(runner)


class ScopedTarget:
    """Runs commands as if inside the installed system mounted at root.

    Use as a context manager.  On entry, the virtual file systems of the
    running system are bound into the target and name resolution is set up;
    on exit, normal or not, they are unbound again.
    """

    def __init__(self, runner: Runner, root: Path, **unbind_kwargs: Any) -> None:
        """Initialize the scoped target."""
        self.runner = runner
        self.root = root
        self.bound = False
        self._resolv_backup: Path | None = None
        self._unbind_kwargs = unbind_kwargs

    def path(self, withinchroot: str) -> Path:
        """Return the path outside the target of a path inside it."""
        return self.root / withinchroot.lstrip(os.path.sep)

    def in_chroot(self, cmd: Sequence[str]) -> list[str]:
        """Return cmd wrapped to run inside the target."""
        return ["chroot", str(self.root)] + list(cmd)

    def _check_bound(self, cmd: Sequence[str]) -> None:
        if not self.bound:
            raise TargetNotBound(
                f"cannot run {list(cmd)} outside of the target scope of {self.root}"
            )

    def run(self, cmd: Sequence[str], input: str | None = None) -> None:
        """Run a command inside the target."""
        self._check_bound(cmd)
        self.runner.check_call(self.in_chroot(cmd), input=input)

    def check_output(self, cmd: Sequence[str]) -> str:
        """Run a command inside the target and return its output."""
        self._check_bound(cmd)
        return self.runner.check_output(self.in_chroot(cmd))

    def _set_up_resolver(self) -> None:
        resolv = self.path("etc/resolv.conf")
        makedirs([resolv.parent])
        if os.path.islink(resolv):
            # Usually points into /run, which is empty in the target.
            backup = self.path("etc/resolv.conf.orig")
            _LOGGER.info("Backing up original resolv.conf")
            os.rename(resolv, backup)
            self._resolv_backup = backup
            writetext(resolv, NAMESERVER_LINE + "\n")
        else:
            ensure_line(resolv, NAMESERVER_LINE)

    def _restore_resolver(self) -> None:
        if not self._resolv_backup:
            return
        resolv = self.path("etc/resolv.conf")
        _LOGGER.info("Restoring original resolv.conf")
        if os.path.lexists(resolv):
            os.unlink(resolv)
        os.rename(self._resolv_backup, resolv)
        self._resolv_backup = None

    def acquire(self) -> None:
        """Bind the virtual file systems and set up name resolution."""
        if not ismount(self.runner, self.root):
            raise TargetNotMounted(f"{self.root} is not mounted")
        try:
            for vfs in VIRTUAL_FILESYSTEMS:
                mountpoint = self.path(vfs)
                if ismount(self.runner, mountpoint):
                    _LOGGER.info("%s is already bound", mountpoint)
                    continue
                makedirs([mountpoint])
                self.runner.check_call(
                    ["mount", "--rbind", f"/{vfs}", str(mountpoint)]
                )
            self.bound = True
            self._set_up_resolver()
        except BaseException:
            self._release_after_failure()
            raise

    def release(self) -> None:
        """Undo acquire.  Safe to call more than once."""
        self.bound = False
        try:
            self._restore_resolver()
        finally:
            unbind_virtual_filesystems(self.runner, self.root, **self._unbind_kwargs)

    def _release_after_failure(self) -> None:
        # The failure being handled is the one to report.
        try:
            self.release()
        except Exception:
            _LOGGER.exception("Could not release %s", self.root)

    def __enter__(self) -> "ScopedTarget":
        """Enter the target scope."""
        self.acquire()
        return self

    def __exit__(self, exc_type: Any, *unused_args: Any) -> None:
        """Leave the target scope."""
        if exc_type is None:
            self.release()
        else:
            self._release_after_failure()
