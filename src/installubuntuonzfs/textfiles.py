"""Line-oriented configuration documents with idempotent edits.

Applying the same edits to a document twice yields the same text as
applying them once.
"""

import dataclasses
import os
from pathlib import Path
import re
from typing import Sequence

from installubuntuonzfs.cmd import readtext, writetext


def _read_if_exists(path: Path) -> str:
    if not os.path.exists(path):
        return ""
    return readtext(path)


def _render(lines: Sequence[str]) -> str:
    return "".join(line + "\n" for line in lines)


class ShellVarsFile:
    """A file of KEY=value assignments, such as /etc/default/grub."""

    def __init__(self, lines: list[str] | None = None) -> None:
        """Initialize the document from its lines, without newlines."""
        self.lines = lines or []

    @classmethod
    def parse(cls, text: str) -> "ShellVarsFile":
        """Parse the text of a document."""
        return cls(text.splitlines())

    @classmethod
    def load(cls, path: Path) -> "ShellVarsFile":
        """Load a document; a missing file is an empty document."""
        return cls.parse(_read_if_exists(path))

    def save(self, path: Path) -> None:
        """Write the document."""
        writetext(path, str(self))

    def __str__(self) -> str:
        """Render the document."""
        return _render(self.lines)

    @staticmethod
    def _active(key: str) -> re.Pattern[str]:
        return re.compile(r"^\s*" + re.escape(key) + "=(.*)$")

    @staticmethod
    def _commented(key: str) -> re.Pattern[str]:
        return re.compile(r"^\s*#\s*" + re.escape(key) + "=")

    def get(self, key: str) -> str | None:
        """Return the unquoted value of the last assignment to key."""
        pattern = self._active(key)
        value = None
        for line in self.lines:
            m = pattern.match(line)
            if m:
                value = m.group(1).strip()
        if value is not None and len(value) >= 2 and value[0] == value[-1] == '"':
            value = value[1:-1]
        elif value is not None and len(value) >= 2 and value[0] == value[-1] == "'":
            value = value[1:-1]
        return value

    def set(self, key: str, value: str, quote: bool = False) -> None:
        """Assign value to key.

        The first assignment is replaced and any later ones dropped.  If
        there is none, a commented-out assignment is replaced instead, and
        failing that the assignment is appended.
        """
        assignment = f'{key}="{value}"' if quote else f"{key}={value}"
        active = self._active(key)
        indexes = [n for n, line in enumerate(self.lines) if active.match(line)]
        if not indexes:
            commented = self._commented(key)
            indexes = [
                n for n, line in enumerate(self.lines) if commented.match(line)
            ][:1]
        if not indexes:
            self.lines.append(assignment)
            return
        self.lines[indexes[0]] = assignment
        for n in reversed(indexes[1:]):
            del self.lines[n]

    def comment_out(self, prefix: str) -> None:
        """Comment out every assignment to a key starting with prefix."""
        pattern = re.compile(r"^\s*" + re.escape(prefix) + r"[A-Za-z0-9_]*=")
        self.lines = [
            "#" + line if pattern.match(line) else line for line in self.lines
        ]

    def edit_words(
        self,
        key: str,
        prepend: Sequence[str] = (),
        remove: Sequence[str] = (),
        remove_prefixes: Sequence[str] = (),
    ) -> None:
        """Edit the space-separated words of a quoted assignment.

        Words in `remove`, or starting with one of `remove_prefixes`, are
        dropped; then the words in `prepend` are placed in front.
        """
        words = [
            w
            for w in (self.get(key) or "").split()
            if w not in remove
            and w not in prepend
            and not any(w.startswith(p) for p in remove_prefixes)
        ]
        self.set(key, " ".join(list(prepend) + words), quote=True)


@dataclasses.dataclass(frozen=True)
class FstabEntry:
    """A line of /etc/fstab."""

    spec: str
    file: str
    vfstype: str
    options: str = "defaults"
    freq: int = 0
    passno: int = 0

    @property
    def key(self) -> str:
        """What identifies the entry: its mountpoint, or its device if swap."""
        if self.file in ("none", "swap"):
            return self.spec
        return self.file

    def __str__(self) -> str:
        """Render the entry as a line."""
        return " ".join(
            [
                self.spec,
                self.file,
                self.vfstype,
                self.options,
                str(self.freq),
                str(self.passno),
            ]
        )


class FstabFile:
    """An /etc/fstab document.  Comments and blank lines are preserved."""

    def __init__(self, lines: list[str | FstabEntry] | None = None) -> None:
        """Initialize the document."""
        self.lines = lines or []

    @classmethod
    def parse(cls, text: str) -> "FstabFile":
        """Parse the text of an fstab."""
        lines: list[str | FstabEntry] = []
        for line in text.splitlines():
            fields = line.split()
            if not fields or fields[0].startswith("#") or len(fields) < 3:
                lines.append(line)
                continue
            fields += ["defaults", "0", "0"][len(fields) - 3 :]
            try:
                freq, passno = int(fields[4]), int(fields[5])
            except ValueError:
                lines.append(line)
                continue
            lines.append(
                FstabEntry(fields[0], fields[1], fields[2], fields[3], freq, passno)
            )
        return cls(lines)

    @classmethod
    def load(cls, path: Path) -> "FstabFile":
        """Load an fstab; a missing file is an empty document."""
        return cls.parse(_read_if_exists(path))

    def save(self, path: Path) -> None:
        """Write the fstab."""
        writetext(path, str(self))

    def __str__(self) -> str:
        """Render the fstab."""
        return _render([str(line) for line in self.lines])

    def entries(self) -> list[FstabEntry]:
        """Return the entries, in order."""
        return [line for line in self.lines if isinstance(line, FstabEntry)]

    def upsert(self, entry: FstabEntry) -> None:
        """Replace the entry with the same key, or append it."""
        for n, line in enumerate(self.lines):
            if isinstance(line, FstabEntry) and line.key == entry.key:
                self.lines[n] = entry
                return
        self.lines.append(entry)


def render_unit(sections: Sequence[tuple[str, Sequence[tuple[str, str]]]]) -> str:
    """Render a systemd unit file from its sections."""
    blocks = []
    for name, settings in sections:
        blocks.append(
            "\n".join([f"[{name}]"] + [f"{k}={v}" for k, v in settings]) + "\n"
        )
    return "\n".join(blocks)


def ensure_line(path: Path, line: str) -> None:
    """Append line to a file, unless the file already has it."""
    text = _read_if_exists(path)
    if line in text.splitlines():
        return
    if text and not text.endswith("\n"):
        text += "\n"
    writetext(path, text + line + "\n")
