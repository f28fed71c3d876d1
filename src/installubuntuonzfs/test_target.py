#!/usr/bin/env python

import os
from pathlib import Path
import subprocess
import unittest

import mock

from installubuntuonzfs import target as targetmod
from installubuntuonzfs import zfs
from installubuntuonzfs.cmd import readtext, writetext
from installubuntuonzfs.target import ScopedTarget, TargetNotBound, TargetNotMounted
from installubuntuonzfs.test_base import RecordingRunner, tmpdir


class FakeClock(object):
    """Clock that advances only when slept on."""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def unbind_kwargs(clock=None):
    clock = clock or FakeClock()
    return {"clock": clock, "sleep": clock.sleep}


class TestScopedTarget(unittest.TestCase):

    def test_binds_and_unbinds(self):
        with tmpdir() as root:
            r = RecordingRunner(mounted=[root])
            with ScopedTarget(r, root, **unbind_kwargs()) as t:
                for vfs in ["proc", "sys", "dev"]:
                    self.assertIn(str(root / vfs), r.mounted)
                t.run(["update-grub"])
            self.assertEqual(r.mounted, {str(root)})
        self.assertEqual(
            r.commands("mount"),
            [
                ["mount", "--rbind", "/proc", str(root / "proc")],
                ["mount", "--rbind", "/sys", str(root / "sys")],
                ["mount", "--rbind", "/dev", str(root / "dev")],
            ],
        )
        self.assertIn(["chroot", str(root), "update-grub"], r.cmds)
        self.assertEqual(
            [c[-1] for c in r.commands("umount")],
            [str(root / "dev"), str(root / "sys"), str(root / "proc")],
        )

    def test_unbinds_when_a_command_fails(self):
        with tmpdir() as root:
            r = RecordingRunner(
                mounted=[root],
                failures={("chroot",): subprocess.CalledProcessError(100, ["apt"])},
            )
            with self.assertRaises(subprocess.CalledProcessError):
                with ScopedTarget(r, root, **unbind_kwargs()) as t:
                    t.run(["apt", "install", "--yes", "zfs-initramfs"])
            self.assertEqual(r.mounted, {str(root)})

    def test_unmount_failure_does_not_hide_command_failure(self):
        with tmpdir() as root:
            r = RecordingRunner(
                mounted=[root],
                failures={
                    ("chroot",): subprocess.CalledProcessError(100, ["apt"]),
                    ("umount",): subprocess.CalledProcessError(32, ["umount"]),
                },
            )
            with self.assertRaises(subprocess.CalledProcessError) as cm:
                with ScopedTarget(r, root, **unbind_kwargs()) as t:
                    t.run(["apt", "install", "--yes", "zfs-initramfs"])
        self.assertEqual(cm.exception.returncode, 100)

    def test_unmount_failure_is_raised_on_normal_exit(self):
        with tmpdir() as root:
            r = RecordingRunner(
                mounted=[root],
                failures={("umount",): subprocess.CalledProcessError(32, ["umount"])},
            )
            with self.assertRaises(subprocess.CalledProcessError) as cm:
                with ScopedTarget(r, root, **unbind_kwargs()):
                    pass
        self.assertEqual(cm.exception.returncode, 32)

    def test_refuses_unmounted_root(self):
        with tmpdir() as root:
            r = RecordingRunner()
            self.assertRaises(TargetNotMounted, ScopedTarget(r, root).acquire)
            self.assertEqual(r.cmds, [])

    def test_commands_outside_scope_raise(self):
        with tmpdir() as root:
            r = RecordingRunner(mounted=[root])
            t = ScopedTarget(r, root, **unbind_kwargs())
            self.assertRaises(TargetNotBound, t.run, ["true"])
            with t:
                pass
            self.assertRaises(TargetNotBound, t.run, ["true"])
            self.assertRaises(TargetNotBound, t.check_output, ["true"])

    def test_already_bound_filesystems_are_left_alone(self):
        with tmpdir() as root:
            r = RecordingRunner(mounted=[root, root / "proc", root / "sys", root / "dev"])
            with ScopedTarget(r, root, **unbind_kwargs()):
                pass
            self.assertEqual(r.commands("mount"), [])
            self.assertEqual(r.mounted, {str(root)})

    def test_nameserver_is_appended_once(self):
        with tmpdir() as root:
            os.makedirs(root / "etc")
            writetext(root / "etc" / "resolv.conf", "search lan\n")
            r = RecordingRunner(mounted=[root])
            for _ in range(2):
                with ScopedTarget(r, root, **unbind_kwargs()):
                    pass
            self.assertEqual(
                readtext(root / "etc" / "resolv.conf"),
                "search lan\nnameserver 8.8.8.8\n",
            )

    def test_symlinked_resolv_conf_is_restored(self):
        with tmpdir() as root:
            os.makedirs(root / "etc")
            resolv = root / "etc" / "resolv.conf"
            os.symlink("../run/systemd/resolve/stub-resolv.conf", resolv)
            r = RecordingRunner(mounted=[root])
            with ScopedTarget(r, root, **unbind_kwargs()):
                self.assertFalse(os.path.islink(resolv))
                self.assertEqual(readtext(resolv), "nameserver 8.8.8.8\n")
            self.assertTrue(os.path.islink(resolv))
            self.assertEqual(
                os.readlink(resolv), "../run/systemd/resolve/stub-resolv.conf"
            )
            self.assertFalse(os.path.lexists(root / "etc" / "resolv.conf.orig"))

    def test_path(self):
        t = ScopedTarget(RecordingRunner(), Path("/mnt"))
        self.assertEqual(t.path("/etc/fstab"), Path("/mnt/etc/fstab"))
        self.assertEqual(t.in_chroot(["ls"]), ["chroot", "/mnt", "ls"])


class TestExitSequence(unittest.TestCase):

    def test_stubborn_mount_gets_unmounted_again(self):
        with tmpdir() as root:
            r = RecordingRunner(
                mounted=[root, root / "proc", root / "sys", root / "dev"],
                stubborn=[root / "dev"],
            )
            clock = FakeClock()
            targetmod.unbind_virtual_filesystems(r, root, **unbind_kwargs(clock))
            self.assertEqual(
                [c[-1] for c in r.commands("umount")],
                [
                    str(root / "dev"),
                    str(root / "sys"),
                    str(root / "proc"),
                    str(root / "dev"),
                ],
            )
            self.assertEqual(r.mounted, {str(root)})
            # The whole wait shares one budget.
            self.assertLessEqual(clock.now, targetmod.UNMOUNT_TIMEOUT + 0.5)

    def test_unmount_command(self):
        with tmpdir() as root:
            r = RecordingRunner(mounted=[root / "proc"])
            targetmod.unbind_virtual_filesystems(r, root, **unbind_kwargs())
            self.assertEqual(
                r.commands("umount"),
                [["umount", "--recursive", "--force", "--lazy", str(root / "proc")]],
            )

    def test_prepare_for_system_exit_exports_pools(self):
        with tmpdir() as root:
            r = RecordingRunner(mounted=[root, root / "dev"])
            with mock.patch.object(zfs.retrymod.time, "sleep"):
                targetmod.prepare_for_system_exit(r, root, **unbind_kwargs())
            self.assertEqual(r.cmds[-1], ["zpool", "export", "-a"])
            self.assertNotIn(str(root / "dev"), r.mounted)
