"""Commands and utilities."""

import logging
import os
from pathlib import Path
import shlex
import subprocess
from typing import Iterator, Protocol, Sequence, cast

logger = logging.getLogger("cmd")


def readtext(fn: Path) -> str:
    """Read a text file."""
    with open(fn) as f:
        return f.read()


def writetext(fn: Path, text: str) -> None:
    """Write text to a file.

    The write is not transactional.  Incomplete writes can appear after a crash
    """
    with open(fn, "w") as f:
        f.write(text)


def format_cmdline(lst: Sequence[str]) -> str:
    """Format a command line for print()."""
    return " ".join(shlex.quote(x) for x in lst)


class Runner(Protocol):
    """Protocol for something that runs external tools.

    Every privileged tool the installer uses goes through a runner, so that
    tests can substitute a double that records the commands instead.
    Failures are reported as subprocess.CalledProcessError.
    """

    def check_call(self, cmd: Sequence[str], input: str | None = None) -> None:
        """Run a command to completion, feeding it `input` if given."""
        ...

    def check_output(self, cmd: Sequence[str], input: str | None = None) -> str:
        """Run a command to completion and return its standard output."""
        ...

    def call(self, cmd: Sequence[str]) -> int:
        """Run a command and return its exit code, whatever it is."""
        ...

    def interactive(self, cmd: Sequence[str]) -> None:
        """Run a command attached to the terminal of the operator."""
        ...

    def stream(self, cmd: Sequence[str]) -> Iterator[str]:
        """Run a command, yielding its output as it arrives.

        Carriage returns count as line ends, so progress updates come
        through one by one.  The exit code is checked once the output
        is exhausted.
        """
        ...


class SubprocessRunner:
    """Runner that executes commands on the local machine."""

    def check_call(self, cmd: Sequence[str], input: str | None = None) -> None:
        """subprocess.run with logging and exit code checking.

        Standard input will be closed unless input is supplied; the input
        itself is never logged, because it may carry a passphrase.
        """
        cmd = list(cmd)
        logger.debug(
            "Check calling %s%s",
            format_cmdline(cmd),
            " with input" if input is not None else "",
        )
        subprocess.run(
            cmd,
            input=input,
            stdin=subprocess.DEVNULL if input is None else None,
            close_fds=True,
            universal_newlines=True,
            check=True,
        )

    def check_output(self, cmd: Sequence[str], input: str | None = None) -> str:
        """Obtain the standard output of a command."""
        cmd = list(cmd)
        logger.debug("Check outputting %s", format_cmdline(cmd))
        output = cast(
            str,
            subprocess.run(
                cmd,
                input=input,
                stdin=subprocess.DEVNULL if input is None else None,
                stdout=subprocess.PIPE,
                close_fds=True,
                universal_newlines=True,
                check=True,
            ).stdout,
        )
        if output:
            firstline = output.splitlines()[0].strip()
            logger.debug("First line of output from command: %s", firstline)
        else:
            logger.debug("No output from command")
        return output

    def call(self, cmd: Sequence[str]) -> int:
        """subprocess.call with logging."""
        cmd = list(cmd)
        logger.debug("Calling %s", format_cmdline(cmd))
        with open(os.devnull) as devnull:
            return subprocess.call(cmd, stdin=devnull, close_fds=True)

    def interactive(self, cmd: Sequence[str]) -> None:
        """subprocess.check_call with the terminal left attached."""
        cmd = list(cmd)
        logger.debug("Running interactively %s", format_cmdline(cmd))
        subprocess.check_call(cmd)

    def stream(self, cmd: Sequence[str]) -> Iterator[str]:
        """Yield output lines of a command as they are produced."""
        cmd = list(cmd)
        logger.debug("Streaming %s", format_cmdline(cmd))
        with subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            close_fds=True,
            universal_newlines=True,
        ) as p:
            assert p.stdout
            for line in p.stdout:
                yield line.rstrip("\n")
            retcode = p.wait()
        if retcode != 0:
            raise subprocess.CalledProcessError(retcode, cmd)


def ismount(runner: Runner, target: Path) -> bool:
    """Is path a mountpoint, according to mountpoint(1)."""
    return runner.call(["mountpoint", "-q", str(target)]) == 0


def settle(runner: Runner) -> None:
    """Wait for udev to process all pending device events."""
    runner.check_call(["udevadm", "settle"])


def makedirs(ds: list[Path]) -> list[Path]:
    """Recursively create list of directories."""
    for subdir in ds:
        while not os.path.isdir(subdir):
            os.makedirs(subdir, exist_ok=True)
    return ds
