"""Disk discovery, selection and partitioning."""

import dataclasses
import logging
import os
from pathlib import Path
import re
from typing import Callable, Sequence

from installubuntuonzfs.cmd import Runner, settle
from installubuntuonzfs.dialogs import Dialogs
from installubuntuonzfs.log import log_variables
from installubuntuonzfs.retry import wait_for

_LOGGER = logging.getLogger(__name__)

BY_ID_DIR = Path("/dev/disk/by-id")
SYSFS_BLOCK_DIR = Path("/sys/class/block")

CANDIDATE_RE = re.compile(r"(ata|nvme|scsi)-.+")
PARTITION_RE = re.compile(r".+-part[0-9]+")

EFI_PARTITION = 1
BPOOL_PARTITION = 2
RPOOL_PARTITION = 3

# udevadm settle is not always enough for the -partN links to show up.
PARTITION_NODE_TIMEOUT = 30


class NoDisksAvailable(Exception):
    """There is no disk the pools could be created on."""


@dataclasses.dataclass(frozen=True)
class DiskDescriptor:
    """A whole disk found on the system."""

    path: str
    device: str
    bus: str
    removable: bool


@dataclasses.dataclass(frozen=True)
class Partition:
    """A partition to create with sgdisk."""

    number: int
    start: str
    end: str
    typecode: str

    def sgdisk_args(self) -> list[str]:
        """Arguments that make sgdisk create this partition."""
        return [
            f"-n{self.number}:{self.start}:{self.end}",
            f"-t{self.number}:{self.typecode}",
        ]


def partition_plan(free_tail_space: int) -> tuple[Partition, Partition, Partition]:
    """Return the EFI, boot pool and root pool partitions for each disk.

    The root pool partition takes the rest of the disk, minus
    `free_tail_space` GiB left at the end.
    """
    end = "0" if free_tail_space == 0 else f"-{free_tail_space}G"
    return (
        Partition(EFI_PARTITION, "1M", "+512M", "EF00"),
        Partition(BPOOL_PARTITION, "0", "+512M", "BF01"),
        Partition(RPOOL_PARTITION, "0", end, "BF01"),
    )


def partition_path(disk: str, number: int) -> str:
    """Return the by-id path of partition `number` of `disk`."""
    return f"{disk}-part{number}"


def parse_udev_properties(text: str) -> dict[str, str]:
    """Parse the KEY=value lines of udevadm info --query=property."""
    props: dict[str, str] = {}
    for line in text.splitlines():
        k, sep, v = line.strip().partition("=")
        if sep:
            props[k] = v
    return props


def is_removable(device: str, sysfs_block_dir: Path = SYSFS_BLOCK_DIR) -> bool:
    """Does the kernel flag the block device as removable."""
    try:
        with open(sysfs_block_dir / device / "removable") as f:
            return f.read().strip() == "1"
    except FileNotFoundError:
        return False


def discover_disks(
    runner: Runner,
    by_id_dir: Path = BY_ID_DIR,
    sysfs_block_dir: Path = SYSFS_BLOCK_DIR,
) -> list[DiskDescriptor]:
    """Find the whole ATA, NVMe and SCSI disks of the system.

    USB and removable devices are left out.
    """
    # In some cases /dev/disk/by-id is stale, e.g. after resuming a cloned VM.
    runner.check_call(["udevadm", "trigger"])
    settle(runner)

    candidates = sorted(
        str(by_id_dir / name)
        for name in os.listdir(by_id_dir)
        if CANDIDATE_RE.fullmatch(name) and not PARTITION_RE.fullmatch(name)
    )
    disks: list[DiskDescriptor] = []
    for path in candidates:
        device = os.path.basename(os.path.realpath(path))
        props = parse_udev_properties(
            runner.check_output(
                ["udevadm", "info", "--query=property", os.path.realpath(path)]
            )
        )
        bus = props.get("ID_BUS", "")
        removable = is_removable(device, sysfs_block_dir)
        if props.get("ID_TYPE") != "disk" or bus == "usb" or removable:
            _LOGGER.debug("Skipping %s (%s, bus %r)", path, device, bus)
            continue
        disks.append(DiskDescriptor(path, device, bus, removable))

    log_variables([("system_disks", [d.path for d in disks])])
    return disks


def mounted_block_devices(runner: Runner) -> set[str]:
    """Names of the block devices backing a mounted file system.

    A disk counts when one of its partitions is mounted, or when it is
    mounted itself.
    """
    output = runner.check_output(
        ["lsblk", "--raw", "--noheadings", "--output", "NAME,PKNAME,MOUNTPOINT"]
    )
    devices: set[str] = set()
    for line in output.splitlines():
        fields = (line.split(" ") + ["", "", ""])[:3]
        name, pkname, mountpoint = fields
        if mountpoint and mountpoint != "[SWAP]":
            devices.add(pkname or name)
    return devices


def select_disks(
    requested: str | None,
    system_disks: Sequence[DiskDescriptor],
    mounted_devices: set[str],
    dialogs: Dialogs,
) -> list[str]:
    """Pick the disks the pools will be created on.

    A requested comma-separated list is taken verbatim, minus the empty
    entries left by stray commas.  Otherwise the operator chooses among the
    system disks, except for those with mounted file systems.  Order is
    preserved; the first disk is the primary one.
    """
    if requested:
        return [d for d in requested.split(",") if d]

    choices = [
        (d.path, f"({d.device})")
        for d in system_disks
        if d.device not in mounted_devices
    ]
    if not choices:
        raise NoDisksAvailable(
            "no disk is available; devices with mounted partitions, cdroms"
            " and removable devices are not eligible"
        )
    text = (
        "Select the ZFS devices (multiple selections will be in mirror).\n\n"
        "Devices with mounted partitions, cdroms, and removable devices are"
        " not displayed!\n"
    )
    while True:
        selected = dialogs.checklist(text, choices)
        if selected:
            return selected


def provision_disks(
    runner: Runner,
    disks: Sequence[str],
    free_tail_space: int,
    exists: Callable[[str], bool] | None = None,
    timeout: float = PARTITION_NODE_TIMEOUT,
) -> None:
    """Wipe and partition the disks, then format their EFI partitions."""
    exists = exists or os.path.exists
    plan = partition_plan(free_tail_space)
    for disk in disks:
        _LOGGER.info("Partitioning %s", disk)
        # More thorough than sgdisk --zap-all.
        runner.check_call(["wipefs", "--all", disk])
        for partition in plan:
            runner.check_call(["sgdisk"] + partition.sgdisk_args() + [disk])

    # The partition links are not created synchronously.
    settle(runner)
    nodes = [partition_path(d, p.number) for d in disks for p in plan]
    wait_for(
        lambda: all(exists(n) for n in nodes),
        timeout,
        what="partition device nodes to appear",
    )

    for disk in disks:
        runner.check_call(
            ["mkfs.fat", "-F", "32", "-n", "EFI", partition_path(disk, EFI_PARTITION)]
        )
