"""Input gating of the Tkinter window, exercised without a display."""

from __future__ import annotations

import queue
import unittest
from unittest import mock

try:
    import funnybot_gui
except (ImportError, RuntimeError):  # pragma: no cover - Tk bindings missing
    funnybot_gui = None


@unittest.skipUnless(funnybot_gui is not None, "Tkinter is not available")
class TestSendGating(unittest.TestCase):
    """The Return key must not queue work while a reply is pending."""

    def build_window(self, typed: str = "hi") -> "funnybot_gui.ChatWindow":
        window = funnybot_gui.ChatWindow.__new__(funnybot_gui.ChatWindow)
        window._session = mock.Mock(is_typing=False)
        window._work_queue = queue.Queue()
        window._user_entry = mock.Mock()
        window._user_entry.get.return_value = typed
        window._send_button = mock.Mock()
        window._status_var = mock.Mock()
        return window

    def test_send_is_ignored_while_previous_message_is_queued(self) -> None:
        window = self.build_window()
        window._work_queue.put("earlier")
        window._work_queue.get()

        window._send_message_direct()

        self.assertTrue(window._work_queue.empty())
        window._user_entry.delete.assert_not_called()
        window._send_button.configure.assert_not_called()

    def test_send_is_ignored_while_session_is_typing(self) -> None:
        window = self.build_window()
        window._session.is_typing = True
        window._send_message_direct()
        self.assertTrue(window._work_queue.empty())

    def test_send_queues_text_and_locks_input(self) -> None:
        window = self.build_window("tell me a joke")
        window._send_message_direct()

        self.assertEqual(window._work_queue.get_nowait(), "tell me a joke")
        window._user_entry.delete.assert_called_once_with(0, funnybot_gui.tk.END)
        window._user_entry.configure.assert_called_once_with(state=funnybot_gui.tk.DISABLED)
        window._send_button.configure.assert_called_once_with(state=funnybot_gui.tk.DISABLED)

    def test_blank_entry_is_not_queued(self) -> None:
        window = self.build_window("   ")
        window._send_message_direct()
        self.assertTrue(window._work_queue.empty())
        window._user_entry.delete.assert_not_called()


if __name__ == "__main__":  # pragma: no cover - convenience entry point
    unittest.main(verbosity=2)
