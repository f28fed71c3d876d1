"""ZFS pools and volumes."""

import contextlib
import dataclasses
import logging
import os
from os.path import join as j
from pathlib import Path
import subprocess
from typing import Callable, Generator, Literal

from installubuntuonzfs.cmd import Runner, settle
from installubuntuonzfs.config import (
    Configuration,
    PoolOption,
    ValidationFailure,
    is_valid_pool_name,
)
from installubuntuonzfs.disks import BPOOL_PARTITION, RPOOL_PARTITION, partition_path
import installubuntuonzfs.retry as retrymod

_LOGGER = logging.getLogger(__name__)

ENCRYPTION_OPTIONS = [
    "-O",
    "encryption=on",
    "-O",
    "keylocation=prompt",
    "-O",
    "keyformat=passphrase",
]
SWAP_VOLUME_NAME = "swap"
SWAP_VOLUME_PROPERTIES = [
    "compression=zle",
    "logbias=throughput",
    "sync=always",
    "primarycache=metadata",
    "secondarycache=none",
    "com.sun:auto-snapshot=false",
]
TEMP_VOLUME_NAME = "os-install-temp"
TEMP_VOLUME_SIZE = "10G"
ZVOL_TIMEOUT = 30


def zvol_path(poolname: str, volume: str) -> str:
    """Return the device path of a ZFS volume."""
    return j("/dev/zvol", poolname, volume)


@dataclasses.dataclass(frozen=True)
class Pool:
    """A pool to be created on partitions of the selected disks."""

    role: Literal["boot", "root"]
    name: str
    mountpoint: str
    tweaks: tuple[PoolOption, ...]
    members: tuple[str, ...]
    encrypted: bool = False

    @property
    def mirror(self) -> bool:
        """Pools spanning more than one disk are mirrors."""
        return len(self.members) > 1

    def create_command(self, altroot: Path) -> list[str]:
        """Return the zpool create command line for this pool.

        The alternate root only lasts until the pool is exported.
        """
        cmd = ["zpool", "create"]
        if self.encrypted:
            cmd.extend(ENCRYPTION_OPTIONS)
        for option in self.tweaks:
            cmd.extend(option.args())
        cmd.extend(
            [
                "-O",
                "devices=off",
                "-O",
                f"mountpoint={self.mountpoint}",
                "-R",
                str(altroot),
                "-f",
                self.name,
            ]
        )
        if self.mirror:
            cmd.append("mirror")
        cmd.extend(self.members)
        return cmd


def plan_pools(config: Configuration) -> tuple[Pool, Pool]:
    """Return the root pool and the boot pool for the configuration."""
    rpool = Pool(
        role="root",
        name=config.rpool_name,
        mountpoint="/",
        tweaks=config.rpool_tweaks,
        members=tuple(partition_path(d, RPOOL_PARTITION) for d in config.disks),
        encrypted=config.encrypt_rpool,
    )
    bpool = Pool(
        role="boot",
        name=config.bpool_name,
        mountpoint="/boot",
        tweaks=config.bpool_tweaks,
        members=tuple(partition_path(d, BPOOL_PARTITION) for d in config.disks),
    )
    return rpool, bpool


def create_pool(
    runner: Runner, pool: Pool, altroot: Path, passphrase: str | None = None
) -> None:
    """Create a pool.  The passphrase, if any, is fed through standard input."""
    if not is_valid_pool_name(pool.name):
        raise ValidationFailure(f"invalid pool name {pool.name!r}")
    if pool.encrypted and passphrase is None:
        raise ValidationFailure(f"pool {pool.name} is encrypted but has no passphrase")
    _LOGGER.info(
        "Creating %s pool %s%s on %s",
        pool.role,
        pool.name,
        " (mirror)" if pool.mirror else "",
        ", ".join(pool.members),
    )
    runner.check_call(
        pool.create_command(altroot),
        input=passphrase if pool.encrypted else None,
    )


def create_pools(
    runner: Runner, config: Configuration, altroot: Path
) -> tuple[Pool, Pool]:
    """Create the root pool, then the boot pool."""
    rpool, bpool = plan_pools(config)
    assert len(rpool.members) == len(bpool.members) == len(config.disks)
    create_pool(runner, rpool, altroot, config.passphrase)
    create_pool(runner, bpool, altroot)
    return rpool, bpool


def create_swap(
    runner: Runner,
    config: Configuration,
    page_size: int | None = None,
    exists: Callable[[str], bool] | None = None,
    timeout: float = ZVOL_TIMEOUT,
) -> str | None:
    """Create and format the swap volume, if swap was requested.

    Returns the swap device path, or None.
    """
    exists = exists or os.path.exists
    if config.swap_size == 0:
        _LOGGER.info("No swap requested")
        return None
    if page_size is None:
        page_size = os.sysconf("SC_PAGESIZE")
    cmd = ["zfs", "create", "-V", f"{config.swap_size}G", "-b", str(page_size)]
    for prop in SWAP_VOLUME_PROPERTIES:
        cmd.extend(["-o", prop])
    cmd.append(j(config.rpool_name, SWAP_VOLUME_NAME))
    _LOGGER.info("Creating %sG swap volume", config.swap_size)
    runner.check_call(cmd)

    device = zvol_path(config.rpool_name, SWAP_VOLUME_NAME)
    settle(runner)
    retrymod.wait_for(lambda: exists(device), timeout, what=f"{device} to appear")
    runner.check_call(["mkswap", "-f", device])
    return device


@dataclasses.dataclass(frozen=True)
class TempVolume:
    """Scratch volume the generic installer installs onto."""

    dataset: str
    device: str

    @property
    def partition(self) -> str:
        """The single partition of the volume."""
        return f"{self.device}p1"


@contextlib.contextmanager
def temp_volume(
    runner: Runner,
    config: Configuration,
    islink: Callable[[str], bool] | None = None,
    realpath: Callable[[str], str] | None = None,
    timeout: float = ZVOL_TIMEOUT,
) -> Generator[TempVolume, None, None]:
    """Create a temporary volume with one Linux partition on it.

    The volume is destroyed when the context is exited normally.  After a
    failure it is left behind, like everything else created so far.
    """
    islink = islink or os.path.islink
    realpath = realpath or os.path.realpath
    dataset = j(config.rpool_name, TEMP_VOLUME_NAME)
    _LOGGER.info("Creating temporary volume %s", dataset)
    runner.check_call(["zfs", "create", "-V", TEMP_VOLUME_SIZE, dataset])

    # The zvol path is a regular file until udev turns it into a symlink.
    link = zvol_path(config.rpool_name, TEMP_VOLUME_NAME)
    settle(runner)
    retrymod.wait_for(lambda: islink(link), timeout, what=f"{link} to appear")
    device = realpath(link)

    runner.check_call(["sgdisk", "-n1:0:0", "-t1:8300", device])
    settle(runner)

    yield TempVolume(dataset, device)

    _LOGGER.info("Destroying temporary volume %s", dataset)
    runner.check_call(["zfs", "destroy", dataset])


def _export_all(runner: Runner) -> None:
    runner.check_call(["zpool", "export", "-a"])


# Pools can stay busy for a moment after lazy unmounts; we try 3 times.
export_pools = retrymod.retry(
    2, timeout=5, retryable_exception=subprocess.CalledProcessError
)(_export_all)
