"""Tkinter desktop front-end for FunnyBot.

The window only renders :class:`funnybot.ChatSession` state and forwards user
actions to it; submissions run on a background worker so the UI stays
responsive while a reply is pending.
"""

from __future__ import annotations

import queue
import threading
from typing import Any, Optional

from rich.console import Console

import funnybot
from funnybot import (
    LOGGER,
    AppConfig,
    AppPaths,
    ChatSession,
    ConfigurationError,
    ListeningState,
    MetricsTracker,
    SpeechCoordinator,
)

try:
    import tkinter as tk
    from tkinter import messagebox, scrolledtext
except ModuleNotFoundError as exc:  # pragma: no cover - depends on environment
    raise RuntimeError(
        "Tkinter is required to run the FunnyBot window. "
        "Install the Python Tk bindings for your platform."
    ) from exc


CONSOLE = Console()
WINDOW_TITLE = "🚀 My Funny Chatbot 🤖"
EMPTY_STATE_TEXT = "Ask me anything!"


class ChatWindow:
    """Tkinter based desktop client for a chat session."""

    def __init__(
        self,
        session: ChatSession,
        metrics: MetricsTracker,
        speech: Optional[SpeechCoordinator] = None,
    ) -> None:
        self._session = session
        self._metrics = metrics
        self._speech = speech or SpeechCoordinator()
        self._root = tk.Tk()
        self._root.title(WINDOW_TITLE)
        self._root.geometry("720x640")
        self._root.protocol("WM_DELETE_WINDOW", self._on_close)

        toolbar = tk.Frame(self._root)
        toolbar.pack(fill=tk.X, padx=12, pady=(12, 0))
        tk.Button(toolbar, text="Clear chat", command=self._clear_chat).pack(side=tk.RIGHT)
        if self._speech.can_speak:
            tk.Button(toolbar, text="Speak reply", command=self._toggle_playback).pack(
                side=tk.RIGHT, padx=(0, 8)
            )

        self._chat_display = scrolledtext.ScrolledText(
            self._root,
            wrap=tk.WORD,
            font=("Helvetica", 12),
            state=tk.DISABLED,
        )
        self._chat_display.pack(padx=12, pady=12, fill=tk.BOTH, expand=True)
        self._chat_display.tag_configure("user", foreground="#00897b", justify=tk.RIGHT)
        self._chat_display.tag_configure("assistant", foreground="#212121")
        self._chat_display.tag_configure("typing", foreground="#757575")
        self._chat_display.tag_configure("info", foreground="#9e9e9e", justify=tk.CENTER)

        input_frame = tk.Frame(self._root)
        input_frame.pack(fill=tk.X, padx=12, pady=(0, 12))

        self._mic_button: Optional[tk.Button] = None
        if self._speech.can_listen:
            self._mic_button = tk.Button(input_frame, text="🎤", command=self._toggle_listening)
            self._mic_button.pack(side=tk.LEFT, padx=(0, 8))

        self._user_entry = tk.Entry(input_frame, font=("Helvetica", 12))
        self._user_entry.pack(side=tk.LEFT, fill=tk.X, expand=True)
        self._user_entry.bind("<Return>", self._send_message_event)

        self._send_button = tk.Button(input_frame, text="Send", command=self._send_message_direct)
        self._send_button.pack(side=tk.LEFT, padx=(8, 0))

        self._status_var = tk.StringVar(value="Ready")
        tk.Label(
            self._root,
            textvariable=self._status_var,
            anchor=tk.W,
            relief=tk.SUNKEN,
        ).pack(fill=tk.X, padx=12, pady=(0, 12))

        self._work_queue: "queue.Queue[str]" = queue.Queue()
        self._response_thread = threading.Thread(
            target=self._response_worker,
            name="ChatResponseWorker",
            daemon=True,
        )
        self._response_thread.start()
        self._session.add_listener(lambda _session: self._root.after(0, self._render))
        self._render()

    def _send_message_event(self, event: "tk.Event[Any]") -> None:  # pragma: no cover - GUI
        self._send_message_direct()

    def _send_message_direct(self) -> None:
        if self._session.is_typing or self._work_queue.unfinished_tasks:
            return
        text = self._user_entry.get()
        if not text.strip():
            return
        self._user_entry.delete(0, tk.END)
        self._user_entry.configure(state=tk.DISABLED)
        self._send_button.configure(state=tk.DISABLED)
        self._status_var.set("Waiting for response...")
        self._work_queue.put(text)

    def _response_worker(self) -> None:
        while True:
            text = self._work_queue.get()
            try:
                outcome = self._session.submit(text)
                LOGGER.debug("Submission finished: %s", outcome.value)
            except Exception:  # pragma: no cover - keeps the worker alive
                LOGGER.exception("Unexpected failure while sending a message")
            finally:
                self._work_queue.task_done()
                self._root.after(0, self._on_response_complete)

    def _on_response_complete(self) -> None:
        snapshot = self._metrics.snapshot()
        self._status_var.set(
            f"Ready | Replies: {snapshot['count']} | Failures: {snapshot['failures']} "
            f"| Mean latency: {snapshot['mean']:.2f}s"
        )
        self._user_entry.configure(state=tk.NORMAL)
        self._send_button.configure(state=tk.NORMAL)

    def _render(self) -> None:
        messages = self._session.messages
        self._chat_display.configure(state=tk.NORMAL)
        self._chat_display.delete("1.0", tk.END)
        if not messages and not self._session.is_typing:
            self._chat_display.insert(tk.END, f"\n{EMPTY_STATE_TEXT}\n", "info")
        for message in reversed(messages):
            if message.is_user:
                self._chat_display.insert(tk.END, f"{message.text}\n\n", "user")
            else:
                self._chat_display.insert(tk.END, f"🤖 {message.text}\n\n", "assistant")
        if self._session.is_typing:
            self._chat_display.insert(tk.END, "🤖 Typing...\n", "typing")
        self._chat_display.configure(state=tk.DISABLED)
        self._chat_display.yview(tk.END)

    def _clear_chat(self) -> None:
        cleared = self._session.clear(
            confirm=lambda: messagebox.askyesno(
                "Clear chat?", "This will permanently delete all messages."
            )
        )
        if cleared:
            self._speech.stop_all()
            self._status_var.set("Chat cleared - Ready")

    def _toggle_listening(self) -> None:
        def fill_input(words: str) -> None:
            def apply() -> None:
                self._user_entry.delete(0, tk.END)
                self._user_entry.insert(0, words)

            self._root.after(0, apply)

        self._speech.toggle_listening(fill_input)
        if self._mic_button is not None:
            listening = self._speech.listening is ListeningState.LISTENING
            self._mic_button.configure(text="🛑" if listening else "🎤")

    def _toggle_playback(self) -> None:
        latest = next((m for m in self._session.messages if not m.is_user), None)
        if latest is not None:
            self._speech.toggle_playback(latest)

    def _on_close(self) -> None:
        self._speech.stop_all()
        self._session.shutdown()
        self._root.destroy()

    def run(self) -> None:  # pragma: no cover - GUI loop
        LOGGER.info("Starting GUI loop")
        self._root.mainloop()


# ---------------------------------------------------------------------------
# Application bootstrap
# ---------------------------------------------------------------------------

def build_application(paths: Optional[AppPaths] = None) -> ChatWindow:
    """Load configuration, restore the session and build the window."""

    paths = paths or AppPaths()
    config = AppConfig.from_env(paths)
    config.require_credential()
    metrics = MetricsTracker()
    session = funnybot.build_session(config, paths, metrics=metrics)
    return ChatWindow(session, metrics)


def main() -> None:  # pragma: no cover - entry point
    try:
        app = build_application()
    except ConfigurationError as exc:
        CONSOLE.print(f"[bold red]Configuration error:[/bold red] {exc}")
        return
    except Exception as exc:  # pragma: no cover - defensive catch-all
        LOGGER.exception("Fatal error during application startup")
        CONSOLE.print(f"[bold red]Unexpected error:[/bold red] {exc}")
        return

    app.run()


if __name__ == "__main__":  # pragma: no cover - module executed directly
    main()
