#!/usr/bin/env python

import os
import subprocess
import unittest

import mock

from installubuntuonzfs import disks
from installubuntuonzfs.retry import TimedOut
from installubuntuonzfs.test_base import RecordingRunner, tmpdir

D1 = "/dev/disk/by-id/ata-D1"
D2 = "/dev/disk/by-id/ata-D2"

ATA_DISK = "ID_BUS=ata\nID_TYPE=disk\nDEVNAME=/dev/sda\n"
USB_DISK = "ID_BUS=usb\nID_TYPE=disk\n"
CDROM = "ID_BUS=ata\nID_TYPE=cd\n"


class TestPartitionPlan(unittest.TestCase):

    def test_whole_disk(self):
        efi, boot, root = disks.partition_plan(0)
        self.assertEqual(efi.sgdisk_args(), ["-n1:1M:+512M", "-t1:EF00"])
        self.assertEqual(boot.sgdisk_args(), ["-n2:0:+512M", "-t2:BF01"])
        self.assertEqual(root.sgdisk_args(), ["-n3:0:0", "-t3:BF01"])

    def test_free_tail_space(self):
        root = disks.partition_plan(10)[2]
        self.assertEqual(root.sgdisk_args(), ["-n3:0:-10G", "-t3:BF01"])

    def test_partition_path(self):
        self.assertEqual(disks.partition_path(D1, 3), D1 + "-part3")


class TestDiscovery(unittest.TestCase):

    def _populate(self, d, names):
        byid = d / "by-id"
        sysfs = d / "block"
        os.makedirs(byid)
        for name, device, removable in names:
            os.makedirs(sysfs / device, exist_ok=True)
            with open(sysfs / device / "removable", "w") as f:
                f.write(removable + "\n")
            os.symlink(f"/dev/{device}", byid / name)
        return byid, sysfs

    def test_parse_udev_properties(self):
        self.assertEqual(
            disks.parse_udev_properties(ATA_DISK),
            {"ID_BUS": "ata", "ID_TYPE": "disk", "DEVNAME": "/dev/sda"},
        )

    def test_only_fixed_whole_disks_are_kept(self):
        with tmpdir() as d:
            byid, sysfs = self._populate(
                d,
                [
                    ("ata-D2", "sdb", "0"),
                    ("ata-D1", "sda", "0"),
                    ("ata-D1-part1", "sda1", "0"),
                    ("usb-STICK", "sdc", "1"),
                    ("scsi-USBDISK", "sdd", "0"),
                    ("ata-CDROM", "sr0", "1"),
                    ("nvme-CARD", "nvme0n1", "1"),
                    ("wwn-0x5000", "sda", "0"),
                ],
            )
            r = RecordingRunner(
                outputs={
                    ("udevadm", "info", "--query=property", "/dev/sda"): ATA_DISK,
                    ("udevadm", "info", "--query=property", "/dev/sdb"): ATA_DISK,
                    ("udevadm", "info", "--query=property", "/dev/sdd"): USB_DISK,
                    ("udevadm", "info", "--query=property", "/dev/sr0"): CDROM,
                    ("udevadm", "info", "--query=property", "/dev/nvme0n1"): (
                        "ID_BUS=nvme\nID_TYPE=disk\n"
                    ),
                }
            )
            found = disks.discover_disks(r, byid, sysfs)
        self.assertEqual(
            found,
            [
                disks.DiskDescriptor(str(byid / "ata-D1"), "sda", "ata", False),
                disks.DiskDescriptor(str(byid / "ata-D2"), "sdb", "ata", False),
            ],
        )
        self.assertEqual(r.cmds[:2], [["udevadm", "trigger"], ["udevadm", "settle"]])

    def test_mounted_block_devices(self):
        r = RecordingRunner(
            outputs={
                ("lsblk",): (
                    "sda  \n"
                    "sda1 sda /boot/efi\n"
                    "sda2 sda \n"
                    "sdb  \n"
                    "sdb1 sdb [SWAP]\n"
                    "sr0  /cdrom\n"
                    "loop0  /rofs\n"
                )
            }
        )
        self.assertEqual(
            disks.mounted_block_devices(r), {"sda", "sr0", "loop0"}
        )


class TestSelection(unittest.TestCase):

    def test_requested_disks_skip_empty_entries(self):
        self.assertEqual(
            disks.select_disks(f"{D1},,{D2},", [], set(), None), [D1, D2]
        )


class TestProvisioning(unittest.TestCase):

    def test_commands_for_two_disks(self):
        r = RecordingRunner()
        disks.provision_disks(r, [D1, D2], 0, exists=lambda _: True)
        self.assertEqual(
            r.cmds,
            [
                ["wipefs", "--all", D1],
                ["sgdisk", "-n1:1M:+512M", "-t1:EF00", D1],
                ["sgdisk", "-n2:0:+512M", "-t2:BF01", D1],
                ["sgdisk", "-n3:0:0", "-t3:BF01", D1],
                ["wipefs", "--all", D2],
                ["sgdisk", "-n1:1M:+512M", "-t1:EF00", D2],
                ["sgdisk", "-n2:0:+512M", "-t2:BF01", D2],
                ["sgdisk", "-n3:0:0", "-t3:BF01", D2],
                ["udevadm", "settle"],
                ["mkfs.fat", "-F", "32", "-n", "EFI", D1 + "-part1"],
                ["mkfs.fat", "-F", "32", "-n", "EFI", D2 + "-part1"],
            ],
        )

    def test_waits_for_partition_nodes(self):
        appeared = []

        def exists(path):
            # Nodes show up on the second poll.
            appeared.append(path)
            return len(appeared) > 1

        r = RecordingRunner()
        with mock.patch.object(disks, "wait_for", wraps=disks.wait_for) as w:
            with mock.patch("installubuntuonzfs.retry.time.sleep"):
                disks.provision_disks(r, [D1], 0, exists=exists)
        self.assertEqual(w.call_count, 1)
        self.assertEqual(r.cmds[-1][0], "mkfs.fat")

    def test_partition_nodes_never_appear(self):
        r = RecordingRunner()
        self.assertRaises(
            TimedOut,
            disks.provision_disks,
            r,
            [D1],
            0,
            exists=lambda _: False,
            timeout=0,
        )
        self.assertEqual(r.commands("mkfs.fat"), [])

    def test_failing_tool_aborts(self):
        r = RecordingRunner(
            failures={("sgdisk",): subprocess.CalledProcessError(4, ["sgdisk"])}
        )
        self.assertRaises(
            subprocess.CalledProcessError, disks.provision_disks, r, [D1, D2], 0
        )
        self.assertEqual(r.commands("wipefs"), [["wipefs", "--all", D1]])
