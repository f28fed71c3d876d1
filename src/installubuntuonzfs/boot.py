"""Bootloader and boot-time configuration of the installed system."""

import logging

from installubuntuonzfs.cmd import Runner, makedirs, writetext
from installubuntuonzfs.config import Configuration
from installubuntuonzfs.disks import EFI_PARTITION, partition_path
from installubuntuonzfs.target import ScopedTarget
from installubuntuonzfs.textfiles import (
    FstabEntry,
    FstabFile,
    ShellVarsFile,
    render_unit,
)
from installubuntuonzfs.zfs import SWAP_VOLUME_NAME, zvol_path

_LOGGER = logging.getLogger(__name__)

FSTAB = "etc/fstab"
GRUB_DEFAULTS = "etc/default/grub"
RESUME_CONF = "etc/initramfs-tools/conf.d/resume"
SYSTEMD_SYSTEM_DIR = "etc/systemd/system"

EFI_LABEL = "ubuntu"
EFI_LOADER = "\\EFI\\ubuntu\\grubx64.efi"
MENU_TIMEOUT = "5"


def efi_partuuid(runner: Runner, disk: str) -> str:
    """Return the PARTUUID of the EFI partition of disk."""
    return runner.check_output(
        ["blkid", "-s", "PARTUUID", "-o", "value", partition_path(disk, EFI_PARTITION)]
    ).strip()


def patch_grub_defaults(grub: ShellVarsFile, rpool_name: str) -> None:
    """Make GRUB boot the root pool with a visible menu and boot messages.

    Boot must be in text mode: the passphrase prompt of an encrypted pool
    is not shown under a splash screen, and the boot then fails with a
    confusing permission denied error.
    """
    grub.edit_words(
        "GRUB_CMDLINE_LINUX",
        prepend=[f"root=ZFS={rpool_name}"],
        remove_prefixes=["root=ZFS="],
    )
    grub.set("GRUB_DISABLE_OS_PROBER", "true")
    grub.set("GRUB_TIMEOUT_STYLE", "menu")
    grub.comment_out("GRUB_HIDDEN_")
    grub.set("GRUB_TIMEOUT", MENU_TIMEOUT)
    grub.edit_words("GRUB_CMDLINE_LINUX_DEFAULT", remove=["quiet", "splash"])
    grub.set("GRUB_TERMINAL", "console")
    grub.set("GRUB_RECORDFAIL_TIMEOUT", MENU_TIMEOUT)


def install_and_configure_bootloader(
    target: ScopedTarget, config: Configuration
) -> None:
    """Install GRUB on the EFI partition of the first disk."""
    partuuid = efi_partuuid(target.runner, config.disks[0])

    # The fstab written by the installer refers to the temporary volume.
    fstab = FstabFile()
    fstab.upsert(
        FstabEntry(
            f"PARTUUID={partuuid}",
            "/boot/efi",
            "vfat",
            "nofail,x-systemd.device-timeout=1",
            0,
            1,
        )
    )
    fstab.save(target.path(FSTAB))

    target.run(["mkdir", "-p", "/boot/efi"])
    target.run(["mount", "/boot/efi"])
    target.run(["grub-install"])

    grub = ShellVarsFile.load(target.path(GRUB_DEFAULTS))
    patch_grub_defaults(grub, config.rpool_name)
    grub.save(target.path(GRUB_DEFAULTS))

    target.run(["update-grub"])
    target.run(["umount", "/boot/efi"])


def clone_efi_partition(runner: Runner, config: Configuration) -> None:
    """Copy the EFI partition of the first disk to the other disks.

    Each copy gets its own firmware boot entry, so that any disk of the
    mirror can boot the system.
    """
    primary = partition_path(config.disks[0], EFI_PARTITION)
    for i, disk in enumerate(config.disks[1:], start=1):
        _LOGGER.info("Cloning EFI partition to %s", disk)
        runner.check_call(
            ["dd", f"if={primary}", f"of={partition_path(disk, EFI_PARTITION)}"]
        )
        runner.check_call(
            [
                "efibootmgr",
                "--create",
                "--disk",
                disk,
                "--label",
                f"{EFI_LABEL}-{i + 1}",
                "--loader",
                EFI_LOADER,
            ]
        )


def boot_pool_import_unit_name(bpool_name: str) -> str:
    """Name of the systemd unit importing the boot pool."""
    return f"zfs-import-{bpool_name}.service"


def boot_pool_import_unit(bpool_name: str) -> str:
    """Return the systemd unit that imports the boot pool.

    It runs before the regular import services, and without a cache file,
    so that they do not conflict with it.
    """
    return render_unit(
        [
            (
                "Unit",
                [
                    ("DefaultDependencies", "no"),
                    ("Before", "zfs-import-scan.service"),
                    ("Before", "zfs-import-cache.service"),
                ],
            ),
            (
                "Service",
                [
                    ("Type", "oneshot"),
                    ("RemainAfterExit", "yes"),
                    (
                        "ExecStart",
                        f"/sbin/zpool import -N -o cachefile=none {bpool_name}",
                    ),
                ],
            ),
            ("Install", [("WantedBy", "zfs-import.target")]),
        ]
    )


def configure_boot_pool_import(target: ScopedTarget, config: Configuration) -> None:
    """Import the boot pool at boot, and mount it from fstab."""
    unit = boot_pool_import_unit_name(config.bpool_name)
    unitpath = target.path(f"{SYSTEMD_SYSTEM_DIR}/{unit}")
    makedirs([unitpath.parent])
    writetext(unitpath, boot_pool_import_unit(config.bpool_name))
    target.run(["systemctl", "enable", unit])

    target.run(["zfs", "set", "mountpoint=legacy", config.bpool_name])
    fstab = FstabFile.load(target.path(FSTAB))
    fstab.upsert(
        FstabEntry(
            config.bpool_name,
            "/boot",
            "zfs",
            f"nodev,relatime,x-systemd.requires={unit}",
            0,
            0,
        )
    )
    fstab.save(target.path(FSTAB))


def configure_remaining_settings(target: ScopedTarget, config: Configuration) -> None:
    """Enable the swap volume, and keep the initramfs from resuming from it."""
    if config.swap_size > 0:
        fstab = FstabFile.load(target.path(FSTAB))
        fstab.upsert(
            FstabEntry(
                zvol_path(config.rpool_name, SWAP_VOLUME_NAME),
                "none",
                "swap",
                "discard",
                0,
                0,
            )
        )
        fstab.save(target.path(FSTAB))

    resumepath = target.path(RESUME_CONF)
    makedirs([resumepath.parent])
    resume = ShellVarsFile.load(resumepath)
    resume.set("RESUME", "none")
    resume.save(resumepath)
