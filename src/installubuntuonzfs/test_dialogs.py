#!/usr/bin/env python

import unittest

import mock
from dialog import Dialog

from installubuntuonzfs import dialogs as dialogsmod
from installubuntuonzfs.dialogs import DialogCanceled, TerminalDialogs


class TestTerminalDialogs(unittest.TestCase):

    def setUp(self):
        self.d = mock.Mock()
        self.dialogs = TerminalDialogs(self.d)

    def test_inputbox(self):
        self.d.inputbox.return_value = (Dialog.OK, "rpool")
        self.assertEqual(self.dialogs.inputbox("Name?", "bpool"), "rpool")
        self.d.inputbox.assert_called_once_with("Name?", init="bpool")

    def test_cancel_raises(self):
        self.d.inputbox.return_value = (Dialog.CANCEL, "")
        self.assertRaises(DialogCanceled, self.dialogs.inputbox, "Name?")
        self.d.passwordbox.return_value = (Dialog.ESC, "")
        self.assertRaises(DialogCanceled, self.dialogs.passwordbox, "Passphrase?")

    def test_yesno(self):
        self.d.yesno.return_value = Dialog.OK
        self.assertTrue(self.dialogs.yesno("Encrypt?"))
        self.d.yesno.return_value = Dialog.CANCEL
        self.assertFalse(self.dialogs.yesno("Encrypt?"))
        self.d.yesno.return_value = Dialog.ESC
        self.assertRaises(DialogCanceled, self.dialogs.yesno, "Encrypt?")

    def test_checklist_keeps_offer_order(self):
        self.d.checklist.return_value = (Dialog.OK, ["b", "a"])
        chosen = self.dialogs.checklist("Disks?", [("a", "(sda)"), ("b", "(sdb)")])
        self.assertEqual(chosen, ["a", "b"])
        self.d.checklist.assert_called_once_with(
            "Disks?", choices=[("a", "(sda)", False), ("b", "(sdb)", False)]
        )

    def test_gauge_is_stopped(self):
        self.dialogs.gauge("Sync", iter([10, 50]))
        self.d.gauge_start.assert_called_once_with("Sync", percent=0)
        self.assertEqual(
            self.d.gauge_update.call_args_list, [mock.call(10), mock.call(50)]
        )
        self.d.gauge_stop.assert_called_once_with()

    def test_message(self):
        self.d.msgbox.return_value = Dialog.OK
        self.dialogs.message("Hello!")
        self.d.msgbox.assert_called_once_with("Hello!")


class TestDialogWindow(unittest.TestCase):

    def test_window_is_created_on_first_use(self):
        with mock.patch.object(dialogsmod, "Dialog") as dialog_class:
            dialogs = TerminalDialogs()
            dialog_class.assert_not_called()
            dialogs.message("Hello!")
            dialogs.message("Bye!")
        dialog_class.assert_called_once_with(dialog="dialog", autowidgetsize=True)
        window = dialog_class.return_value
        window.set_background_title.assert_called_once_with(
            dialogsmod.BACKGROUND_TITLE
        )
        self.assertEqual(window.msgbox.call_count, 2)
