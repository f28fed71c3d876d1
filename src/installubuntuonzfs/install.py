"""Operating system installation onto the root pool."""

import logging
from pathlib import Path
import re
from typing import Iterable, Iterator, Protocol

from installubuntuonzfs.cmd import Runner, ismount
from installubuntuonzfs.config import Configuration
from installubuntuonzfs.dialogs import Dialogs
from installubuntuonzfs.target import ScopedTarget
from installubuntuonzfs.zfs import TempVolume, temp_volume

_LOGGER = logging.getLogger(__name__)

UBIQUITY_TARGET = Path("/target")
ZFS_LICENSE_NOTE = "zfs-dkms zfs-dkms/note-incompatible-licenses note true\n"
LIVE_PACKAGES = ["zfs-dkms"]
TARGET_PACKAGES = ["zfs-initramfs", "grub-efi-amd64-signed", "shim-signed"]
SYNC_TITLE = "Syncing the installed O/S to the root pool FS..."

UBIQUITY_INSTRUCTIONS = """The Ubuntu GUI installer will now be launched.

Proceed with the configuration as usual, then, at the partitioning stage:

- check `Something Else` -> `Continue`
- select `{partition}` -> `Change`
  - set `Use as:` to `Ext4`
  - check `Format the partition:`
  - set `Mount point` to `/` -> `OK`
- `Install Now` -> `Continue`
- at the end, choose `Continue Testing`
"""

PROGRESS_RE = re.compile(r"([0-9]+)%")


class Gauge(Protocol):
    """Something that can display the progress of a long operation."""

    def gauge(self, text: str, percentages: Iterable[int]) -> None:
        """Follow the percentages until they are exhausted."""
        ...


def install_live_zfs_module(runner: Runner, config: Configuration) -> None:
    """Install and load the ZFS module of the live system."""
    if config.skip_live_zfs_module_install:
        _LOGGER.info("Skipping installation of the ZFS module on the live system")
        return
    runner.check_call(["debconf-set-selections"], input=ZFS_LICENSE_NOTE)
    runner.check_call(["apt", "install", "--yes"] + LIVE_PACKAGES)
    runner.check_call(["systemctl", "stop", "zfs-zed"])
    runner.check_call(["modprobe", "-r", "zfs"])
    runner.check_call(["modprobe", "zfs"])
    runner.check_call(["systemctl", "start", "zfs-zed"])


def install_target_zfs_packages(target: ScopedTarget) -> None:
    """Install ZFS boot support and the EFI bootloader in the installed system."""
    target.run(["debconf-set-selections"], input=ZFS_LICENSE_NOTE)
    target.run(["apt", "install", "--yes"] + TARGET_PACKAGES)


def parse_progress(line: str) -> int | None:
    """Return the overall percentage of an rsync --info=progress2 line."""
    fields = line.split()
    if len(fields) < 2:
        return None
    m = PROGRESS_RE.fullmatch(fields[1])
    return int(m.group(1)) if m else None


def _percentages(lines: Iterable[str]) -> Iterator[int]:
    for line in lines:
        percent = parse_progress(line)
        if percent is not None:
            yield percent


def run_ubiquity(
    runner: Runner,
    dialogs: Dialogs,
    config: Configuration,
    volume: TempVolume,
    target_mount: Path = UBIQUITY_TARGET,
) -> None:
    """Run the Ubuntu installer onto the temporary volume."""
    if not config.no_info_messages:
        dialogs.message(UBIQUITY_INSTRUCTIONS.format(partition=volume.partition))
    runner.interactive(["ubiquity", "--no-bootloader"])
    runner.check_call(["swapoff", "-a"])

    # Ubiquity sometimes leaves the target unmounted, e.g. when a swapfile
    # under it was active.  We assume the single partition we created.
    if not ismount(runner, target_mount):
        _LOGGER.warning("%s is not mounted; remounting it", target_mount)
        runner.check_call(["mount", volume.partition, str(target_mount)])


def sync_installed_system(
    runner: Runner, gauge: Gauge, source: Path, destination: Path
) -> None:
    """Copy the installed system onto the root pool, then unmount it."""
    cmd = [
        "rsync",
        "-avX",
        "--exclude=/swapfile",
        "--info=progress2",
        "--no-inc-recursive",
        "--human-readable",
        f"{source}/",
        str(destination),
    ]
    gauge.gauge(SYNC_TITLE, _percentages(runner.stream(cmd)))
    runner.check_call(["umount", str(source)])


def run_custom_installation_script(runner: Runner, script: Path) -> None:
    """Run the operator's installation script, which populates the root pool."""
    _LOGGER.info("Running custom installation script %s", script)
    runner.interactive(["sudo", str(script)])


def install_operating_system(
    runner: Runner,
    dialogs: Dialogs,
    gauge: Gauge,
    config: Configuration,
    root: Path,
    target_mount: Path = UBIQUITY_TARGET,
) -> None:
    """Populate the mounted root pool with an operating system.

    With a custom installation script, the script does all the work.
    Otherwise Ubiquity installs onto a temporary volume, whose contents are
    then copied onto the root pool.
    """
    if config.os_installation_script:
        run_custom_installation_script(runner, config.os_installation_script)
        return

    with temp_volume(runner, config) as volume:
        run_ubiquity(runner, dialogs, config, volume, target_mount)
        sync_installed_system(runner, gauge, target_mount, root)
