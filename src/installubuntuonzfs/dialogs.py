"""Interactive dialogs shown to the operator."""

import logging
from typing import Iterable, Protocol, Sequence

from dialog import Dialog

_LOGGER = logging.getLogger(__name__)

BACKGROUND_TITLE = "Ubuntu on ZFS installer"


class DialogCanceled(Exception):
    """The operator canceled a dialog."""


class Dialogs(Protocol):
    """Protocol for the interactive user interface of the installer."""

    def message(self, text: str) -> None:
        """Show an informational message and wait for acknowledgement."""
        ...

    def yesno(self, text: str) -> bool:
        """Ask a yes/no question."""
        ...

    def inputbox(self, text: str, init: str = "") -> str:
        """Ask for a line of text."""
        ...

    def passwordbox(self, text: str) -> str:
        """Ask for a secret."""
        ...

    def checklist(
        self, text: str, choices: Sequence[tuple[str, str]]
    ) -> list[str]:
        """Ask to pick any number of (tag, description) choices.

        Returns the chosen tags in the order the choices were offered.
        """
        ...

    def gauge(self, text: str, percentages: Iterable[int]) -> None:
        """Show a progress bar that follows the given percentages."""
        ...


class TerminalDialogs:
    """Dialogs rendered in the terminal with dialog(1).

    The dialog window is created on first use, so runs that never show a
    dialog do not need the dialog program.
    """

    def __init__(self, d: Dialog | None = None) -> None:
        """Initialize the dialogs."""
        self._d = d

    @property
    def d(self) -> Dialog:
        """The dialog window."""
        if self._d is None:
            self._d = Dialog(dialog="dialog", autowidgetsize=True)
            self._d.set_background_title(BACKGROUND_TITLE)
        return self._d

    def _check(self, code: str, text: str) -> None:
        if code in (Dialog.CANCEL, Dialog.ESC):
            raise DialogCanceled(text)

    def message(self, text: str) -> None:
        """Show an informational message and wait for acknowledgement."""
        code = self.d.msgbox(text)
        self._check(code, text)

    def yesno(self, text: str) -> bool:
        """Ask a yes/no question.  Esc cancels, rather than answering no."""
        code = self.d.yesno(text)
        if code == Dialog.ESC:
            raise DialogCanceled(text)
        return bool(code == Dialog.OK)

    def inputbox(self, text: str, init: str = "") -> str:
        """Ask for a line of text."""
        code, reply = self.d.inputbox(text, init=init)
        self._check(code, text)
        return str(reply)

    def passwordbox(self, text: str) -> str:
        """Ask for a secret, echoing asterisks."""
        code, reply = self.d.passwordbox(text, insecure=True)
        self._check(code, text)
        return str(reply)

    def checklist(
        self, text: str, choices: Sequence[tuple[str, str]]
    ) -> list[str]:
        """Ask to pick any number of choices, none preselected."""
        code, tags = self.d.checklist(
            text, choices=[(tag, item, False) for tag, item in choices]
        )
        self._check(code, text)
        chosen = set(tags)
        return [tag for tag, _ in choices if tag in chosen]

    def gauge(self, text: str, percentages: Iterable[int]) -> None:
        """Show a progress bar until the percentages are exhausted."""
        self.d.gauge_start(text, percent=0)
        try:
            for percent in percentages:
                self.d.gauge_update(percent)
        finally:
            self.d.gauge_stop()


class LoggingGauge:
    """Stand-in for progress reporting when dialogs are suppressed."""

    def __init__(self, step: int = 10) -> None:
        """Initialize the gauge, reporting every `step` percent."""
        self.step = step

    def gauge(self, text: str, percentages: Iterable[int]) -> None:
        """Log the progress every time it crosses a reporting step."""
        last = -1
        for percent in percentages:
            if percent // self.step > last // self.step:
                _LOGGER.info("%s %d%%", text, percent)
                last = percent
