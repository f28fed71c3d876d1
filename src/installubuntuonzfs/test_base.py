#!/usr/bin/env python

import contextlib
import shutil
import subprocess
import tempfile
import unittest
from pathlib import Path

from installubuntuonzfs import cmd


class RecordingRunner(object):
    """Runner that records commands instead of running them.

    Mounts and unmounts are tracked, so that mountpoint -q answers the way
    it would on a real system.  Outputs and failures are keyed by command
    prefix.
    """

    def __init__(self, outputs=None, failures=None, mounted=(), stubborn=()):
        self.cmds = []
        self.inputs = []
        self.outputs = dict(outputs or {})
        self.failures = dict(failures or {})
        self.mounted = set(str(m) for m in mounted)
        # Mountpoints that survive their first unmount.
        self.stubborn = set(str(m) for m in stubborn)
        self.stream_lines = []

    def _match(self, table, cmd):
        for prefix, value in table.items():
            if tuple(cmd[: len(prefix)]) == tuple(prefix):
                return value
        return None

    def _record(self, cmd, input=None):
        cmd = [str(c) for c in cmd]
        self.cmds.append(cmd)
        self.inputs.append(input)
        failure = self._match(self.failures, cmd)
        if failure is not None:
            raise failure
        if cmd[0] == "mount" and "--rbind" in cmd:
            self.mounted.add(cmd[-1])
        elif cmd[0] == "mount" and len(cmd) == 3:
            self.mounted.add(cmd[-1])
        elif cmd[0] == "umount":
            if cmd[-1] in self.stubborn:
                self.stubborn.discard(cmd[-1])
            else:
                self.mounted.discard(cmd[-1])
        return cmd

    def check_call(self, cmd, input=None):
        self._record(cmd, input)

    def check_output(self, cmd, input=None):
        cmd = self._record(cmd, input)
        return self._match(self.outputs, cmd) or ""

    def call(self, cmd):
        cmd = [str(c) for c in cmd]
        if cmd[:2] == ["mountpoint", "-q"]:
            return 0 if cmd[2] in self.mounted else 1
        self._record(cmd)
        return 0

    def interactive(self, cmd):
        self._record(cmd)

    def stream(self, cmd):
        self._record(cmd)
        return iter(list(self.stream_lines))

    def commands(self, *names):
        """The recorded commands whose program is one of names."""
        return [c for c in self.cmds if c[0] in names]


class FakeDialogs(object):
    """Dialogs answered from scripted replies, in order."""

    def __init__(self, inputs=(), passwords=(), yesno=(), checklists=()):
        self.inputs = list(inputs)
        self.passwords = list(passwords)
        self.answers = list(yesno)
        self.checklists = list(checklists)
        self.messages = []
        self.questions = []
        self.gauges = []

    def _reply(self, replies, text):
        self.questions.append(text)
        reply = replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def message(self, text):
        self.messages.append(text)

    def yesno(self, text):
        return self._reply(self.answers, text)

    def inputbox(self, text, init=""):
        return self._reply(self.inputs, text)

    def passwordbox(self, text):
        return self._reply(self.passwords, text)

    def checklist(self, text, choices):
        self.questions.append(text)
        self.offered = list(choices)
        return self.checklists.pop(0)

    def gauge(self, text, percentages):
        self.gauges.append((text, list(percentages)))


@contextlib.contextmanager
def tmpdir():
    tmpd = tempfile.mkdtemp()
    try:
        yield Path(tmpd)
    finally:
        shutil.rmtree(tmpd)


class TestSubprocessRunner(unittest.TestCase):

    def test_check_output_returns_stdout(self):
        r = cmd.SubprocessRunner()
        self.assertEqual(r.check_output(["echo", "hello"]), "hello\n")

    def test_input_is_fed_to_stdin(self):
        r = cmd.SubprocessRunner()
        self.assertEqual(r.check_output(["cat"], input="secret\n"), "secret\n")

    def test_failure_raises(self):
        r = cmd.SubprocessRunner()
        self.assertRaises(subprocess.CalledProcessError, r.check_call, ["false"])

    def test_call_returns_exit_code(self):
        r = cmd.SubprocessRunner()
        self.assertEqual(r.call(["sh", "-c", "exit 3"]), 3)

    def test_stream_splits_lines_and_checks_exit_code(self):
        r = cmd.SubprocessRunner()
        lines = list(r.stream(["printf", "a\\nb\\n"]))
        self.assertEqual(lines, ["a", "b"])
        with self.assertRaises(subprocess.CalledProcessError):
            list(r.stream(["sh", "-c", "echo x; exit 1"]))


class TestCmdHelpers(unittest.TestCase):

    def test_format_cmdline_quotes(self):
        self.assertEqual(
            cmd.format_cmdline(["echo", "a b", "c"]), "echo 'a b' c"
        )

    def test_ismount_asks_mountpoint(self):
        r = RecordingRunner(mounted=["/mnt"])
        self.assertTrue(cmd.ismount(r, Path("/mnt")))
        self.assertFalse(cmd.ismount(r, Path("/target")))
