#!/usr/bin/env python

import argparse
import logging
import os
from pathlib import Path
import shlex
import shutil
import subprocess
import sys
import tempfile
from typing import Any, Callable, Mapping, Sequence

from installubuntuonzfs.boot import (
    clone_efi_partition,
    configure_boot_pool_import,
    configure_remaining_settings,
    install_and_configure_bootloader,
)
from installubuntuonzfs.cmd import Runner, SubprocessRunner
from installubuntuonzfs.config import (
    ENV_NO_INFO_MESSAGES,
    ENV_OS_INSTALLATION_SCRIPT,
    ENV_SKIP_LIVE_ZFS_MODULE_INSTALL,
    ENVIRONMENT_HELP,
    ConfigResolver,
    Configuration,
    ValidationFailure,
    needs_dialogs,
)
from installubuntuonzfs.dialogs import (
    DialogCanceled,
    Dialogs,
    LoggingGauge,
    TerminalDialogs,
)
from installubuntuonzfs.disks import (
    NoDisksAvailable,
    discover_disks,
    mounted_block_devices,
    provision_disks,
)
from installubuntuonzfs.install import (
    UBIQUITY_TARGET,
    install_live_zfs_module,
    install_operating_system,
    install_target_zfs_packages,
)
from installubuntuonzfs.log import log_config, step_banner
from installubuntuonzfs.target import ScopedTarget, prepare_for_system_exit
from installubuntuonzfs.zfs import create_pools, create_swap

_LOGGER = logging.getLogger()

MOUNT_DIR = Path("/mnt")
EFI_FIRMWARE_DIR = Path("/sys/firmware/efi")
TRACE_FILE_NAME = "install-zfs.log"

# Tools the live system always needs.  The ZFS tools are installed by the
# live module step, unless that is skipped.
REQUIRED_TOOLS = [
    "udevadm",
    "lsblk",
    "blkid",
    "wipefs",
    "sgdisk",
    "mkfs.fat",
    "mount",
    "umount",
    "mountpoint",
    "chroot",
    "dd",
    "efibootmgr",
]
LIVE_MODULE_TOOLS = ["debconf-set-selections", "apt", "systemctl", "modprobe"]
DIALOG_TOOLS = ["dialog"]
UBIQUITY_TOOLS = ["ubiquity", "rsync", "swapoff"]

INTRO_MESSAGE = """Hello!

This script will prepare the ZFS pools on the system, install Ubuntu, and configure the boot.

In order to stop the procedure, hit Esc twice during dialogs (excluding yes/no ones), or Ctrl+C while any operation is running.
"""

EXIT_MESSAGE = """The system has been successfully prepared and installed.

You now need to perform a hard reset, then enjoy your ZFS system :-)"""

DESCRIPTION = """Sets up and installs a ZFS Ubuntu installation.

This program needs to be run with admin permissions, from a Live CD.
Any argument shows this help."""

CUSTOM_SCRIPT_HELP = f"""When installing the O/S via ${ENV_OS_INSTALLATION_SCRIPT}, the root pool is
mounted as `{MOUNT_DIR}`; the requisites are:

1. the virtual filesystems must be mounted in `{MOUNT_DIR}` (ie. `for vfs in
   proc sys dev; do mount --rbind /$vfs {MOUNT_DIR}/$vfs; done`)
2. internet must be accessible while chrooting in `{MOUNT_DIR}` (ie. `echo
   nameserver 8.8.8.8 >> {MOUNT_DIR}/etc/resolv.conf`)
3. `{MOUNT_DIR}` must be left in a dismountable state (e.g. no file locks, no
   swap etc.)"""


class PrerequisiteFailure(Exception):
    """The live system cannot run the installation."""


def get_parser() -> argparse.ArgumentParser:
    """Return the parser whose help documents the program."""
    width = max(len(name) for name, _ in ENVIRONMENT_HELP)
    variables = "\n".join(
        f"  {name.ljust(width)} : {text}" for name, text in ENVIRONMENT_HELP
    )
    parser = argparse.ArgumentParser(
        prog="install-ubuntu-on-zfs",
        description=DESCRIPTION,
        epilog=(
            "The procedure can be entirely automated via environment variables:\n\n"
            f"{variables}\n\n{CUSTOM_SCRIPT_HELP}"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    return parser


def _test_cmd(cmdname: str, expected_ret: int) -> bool:
    try:
        with open(os.devnull) as devnull_r, open(os.devnull, "w") as devnull_w:
            subprocess.check_call(
                shlex.split(cmdname),
                stdin=devnull_r,
                stdout=devnull_w,
                stderr=devnull_w,
            )
    except subprocess.CalledProcessError as e:
        if e.returncode == expected_ret:
            return True
        return False
    except FileNotFoundError:
        return False
    return True


def _test_zfs() -> bool:
    return _test_cmd("zfs", 2) and os.path.exists("/dev/zfs")


def check_prerequisites(
    environ: Mapping[str, str], efi_dir: Path = EFI_FIRMWARE_DIR
) -> None:
    """Check that the live system can run the installation.

    Raises:
      PrerequisiteFailure: with the reason, if it cannot.
    """
    if not os.path.isdir(efi_dir):
        raise PrerequisiteFailure(
            "System firmware directory not found; make sure to boot in EFI mode!"
        )
    if os.geteuid() != 0:
        raise PrerequisiteFailure(
            "This program must be run with administrative privileges!"
        )
    script = environ.get(ENV_OS_INSTALLATION_SCRIPT, "")
    if script and not (os.path.isfile(script) and os.access(script, os.X_OK)):
        raise PrerequisiteFailure(
            "The custom O/S installation script provided doesn't exist or is"
            " not executable!"
        )

    tools = list(REQUIRED_TOOLS)
    skip_live_module = environ.get(ENV_SKIP_LIVE_ZFS_MODULE_INSTALL, "") != ""
    if not skip_live_module:
        tools.extend(LIVE_MODULE_TOOLS)
    if not script:
        tools.extend(UBIQUITY_TOOLS)
    if needs_dialogs(environ):
        tools.extend(DIALOG_TOOLS)
    missing = [t for t in tools if shutil.which(t) is None]
    if missing:
        raise PrerequisiteFailure(
            "required tools are not installed: " + ", ".join(missing)
        )
    if skip_live_module and not _test_zfs():
        raise PrerequisiteFailure(
            "ZFS is not installed properly on the live system, and its"
            f" installation was skipped with {ENV_SKIP_LIVE_ZFS_MODULE_INSTALL}."
        )


def _run_steps(steps: Sequence[tuple[str, Callable[[], Any]]]) -> None:
    for name, step in steps:
        step_banner(name)
        step()


def install_ubuntu(
    runner: Runner,
    dialogs: Dialogs,
    environ: Mapping[str, str],
    mount_dir: Path = MOUNT_DIR,
    target_mount: Path = UBIQUITY_TARGET,
    **unbind_kwargs: Any,
) -> Configuration:
    """Install Ubuntu on a ZFS root pool, from the live system.

    Disks are partitioned, the pools are created under mount_dir, and the
    operating system is installed onto them and made bootable.  Finally the
    pools are exported, so the machine can be reset into the new system.

    Nothing is rolled back if a step fails.
    """

    def display_intro_banner() -> None:
        if environ.get(ENV_NO_INFO_MESSAGES, "") == "":
            dialogs.message(INTRO_MESSAGE)

    _run_steps([("display_intro_banner", display_intro_banner)])

    step_banner("find_disks")
    system_disks = discover_disks(runner)
    mounted_devices = mounted_block_devices(runner)

    step_banner("resolve_configuration")
    config = ConfigResolver(environ, dialogs).resolve(system_disks, mounted_devices)

    def create_pools_and_swap() -> None:
        create_pools(runner, config, mount_dir)
        create_swap(runner, config)

    def install_system() -> None:
        gauge = LoggingGauge() if config.no_info_messages else dialogs
        install_operating_system(
            runner, dialogs, gauge, config, mount_dir, target_mount
        )

    _run_steps(
        [
            ("install_zfs_module", lambda: install_live_zfs_module(runner, config)),
            (
                "prepare_disks",
                lambda: provision_disks(runner, config.disks, config.free_tail_space),
            ),
            ("create_pools", create_pools_and_swap),
            ("install_operating_system", install_system),
        ]
    )

    with ScopedTarget(runner, mount_dir, **unbind_kwargs) as target:
        _run_steps(
            [
                ("install_zfs_packages", lambda: install_target_zfs_packages(target)),
                (
                    "install_and_configure_bootloader",
                    lambda: install_and_configure_bootloader(target, config),
                ),
                ("clone_efi_partition", lambda: clone_efi_partition(runner, config)),
                (
                    "configure_boot_pool_import",
                    lambda: configure_boot_pool_import(target, config),
                ),
                (
                    "configure_remaining_settings",
                    lambda: configure_remaining_settings(target, config),
                ),
            ]
        )

    def display_exit_banner() -> None:
        if not config.no_info_messages:
            dialogs.message(EXIT_MESSAGE)

    _run_steps(
        [
            (
                "prepare_for_system_exit",
                lambda: prepare_for_system_exit(runner, mount_dir, **unbind_kwargs),
            ),
            ("display_exit_banner", display_exit_banner),
        ]
    )
    return config


def install_ubuntu_on_zfs(
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    runner: Runner | None = None,
    dialogs: Dialogs | None = None,
) -> int:
    """Install Ubuntu on ZFS.  Any argument shows the help instead."""
    argv = sys.argv[1:] if argv is None else argv
    if argv:
        get_parser().print_help()
        return 0
    environ = os.environ if environ is None else environ

    log_config(Path(tempfile.gettempdir()) / TRACE_FILE_NAME)
    try:
        step_banner("check_prerequisites")
        check_prerequisites(environ)
        install_ubuntu(
            runner or SubprocessRunner(),
            dialogs or TerminalDialogs(),
            environ,
        )
    except (PrerequisiteFailure, ValidationFailure, NoDisksAvailable) as e:
        _LOGGER.error("error: %s", e)
        return 1
    except DialogCanceled:
        _LOGGER.error("Installation canceled by the operator")
        return 130
    except BaseException:
        _LOGGER.exception("Unexpected error")
        raise
    return 0
