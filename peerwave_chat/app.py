"""
Main GUI application — Peerwave Chat.

Layout
------
┌─────────────────────────────────────────┐
│ Menu: File | Settings                    │
├─────────────────────────────────────────┤
│                                [status] │  ← status bar
├─────────────────────────────────────────┤
│                                          │
│   Chat display (scrollable)              │  ← chat_frame
│                                          │
├─────────────────────────────────────────┤
│ Input text area…          │ [Send][Stop] │  ← input_frame
│                           │ [Clear]      │
└─────────────────────────────────────────┘

The network exchange runs on a daemon worker thread.  Everything the core
reports back (partial text, status notices, auth redirects) is funnelled
through a queue that the Tk main loop drains every 40 ms.
"""

import logging
import queue
import threading
import tkinter as tk
import webbrowser
from tkinter import messagebox, scrolledtext, simpledialog, ttk
from urllib.parse import urljoin

from .auth import CredentialHolder, parse_token_input
from .conversation import ConversationStore, Message
from .peerwave_api import API_URL, ChatStreamClient
from .retry import RetryCoordinator
from .storage import ChatStorage

log = logging.getLogger("peerwave_chat")

#: How long a status notice stays visible, in milliseconds.
STATUS_CLEAR_MS = 3000


class PeerwaveChatApp:
    """Peerwave Chat — main application class."""

    def __init__(self) -> None:
        self.root = tk.Tk()
        self.root.title("Peerwave Chat")
        self.root.geometry("900x680")
        self.root.minsize(600, 420)

        self._storage = ChatStorage()
        self._store = ConversationStore(self._storage)
        self._credentials = CredentialHolder()
        self._client = ChatStreamClient()
        self._coordinator = RetryCoordinator(
            self._store, self._client, self._credentials, self,
        )

        self._queue: queue.Queue = queue.Queue()
        self._status_var = tk.StringVar()
        self._status_after: str | None = None
        self._busy = False
        self._cancel: threading.Event | None = None
        self._partial_open = False
        self._partial_model: str | None = None
        self._last_error: str | None = None

        self._build_menu()
        self._build_status_bar()
        self._build_chat_area()
        self._build_input_area()

        self._store.load()
        self._render_history()
        self._check_saved_token()
        self._pump_queue()

        self.root.protocol("WM_DELETE_WINDOW", self._on_close)

    # ------------------------------------------------------------------
    # UI construction
    # ------------------------------------------------------------------

    def _build_menu(self) -> None:
        bar = tk.Menu(self.root)
        self.root.config(menu=bar)

        file_menu = tk.Menu(bar, tearoff=False)
        bar.add_cascade(label="File", menu=file_menu)
        file_menu.add_command(label="Clear Conversation",
                              command=self._clear_chat)
        file_menu.add_separator()
        file_menu.add_command(label="Exit", command=self._on_close)

        settings_menu = tk.Menu(bar, tearoff=False)
        bar.add_cascade(label="Settings", menu=settings_menu)
        settings_menu.add_command(label="Sign in with Token…",
                                  command=self._sign_in)
        settings_menu.add_command(label="Clear Saved Token",
                                  command=self._clear_token)

    def _build_status_bar(self) -> None:
        frame = ttk.Frame(self.root, padding=(10, 4))
        frame.pack(fill=tk.X)
        ttk.Label(frame, textvariable=self._status_var,
                  foreground="#444").pack(side=tk.RIGHT)

    def _build_chat_area(self) -> None:
        frame = ttk.Frame(self.root)
        frame.pack(fill=tk.BOTH, expand=True, padx=10, pady=6)

        self._chat = scrolledtext.ScrolledText(
            frame, wrap=tk.WORD, state=tk.DISABLED,
            font=("", 10), relief=tk.SUNKEN, borderwidth=1,
        )
        self._chat.pack(fill=tk.BOTH, expand=True)

        # Colour / font tags
        self._chat.tag_config("user_lbl",
                              foreground="#005cc5", font=("", 10, "bold"))
        self._chat.tag_config("asst_lbl",
                              foreground="#6f42c1", font=("", 10, "bold"))
        self._chat.tag_config("model_lbl",
                              foreground="#6c757d", font=("", 8))
        self._chat.tag_config("sys_lbl",
                              foreground="#6c757d", font=("", 9, "italic"))
        self._chat.tag_config("user_msg", foreground="#1a1a2e")
        self._chat.tag_config("asst_msg", foreground="#1a1a2e")
        self._chat.tag_config("sys_msg",
                              foreground="#6c757d", font=("", 9, "italic"))
        self._chat.tag_config("err_msg", foreground="#c0392b")

    def _build_input_area(self) -> None:
        outer = ttk.Frame(self.root, padding=(10, 4))
        outer.pack(fill=tk.X, side=tk.BOTTOM)

        self._input = scrolledtext.ScrolledText(
            outer, height=3, wrap=tk.WORD, font=("", 10),
            relief=tk.SUNKEN, borderwidth=1,
        )
        self._input.grid(row=0, column=0, sticky="nsew")
        self._input.bind("<Return>", self._on_enter_key)
        # Shift+Return → literal newline (handled by default)

        act_col = ttk.Frame(outer)
        act_col.grid(row=0, column=1, sticky="ns", padx=(6, 0))

        self._send_btn = ttk.Button(act_col, text="Send ➤",
                                    command=self._send, width=9)
        self._send_btn.pack(pady=2)
        self._stop_btn = ttk.Button(act_col, text="Stop ■",
                                    command=self._stop, width=9,
                                    state=tk.DISABLED)
        self._stop_btn.pack(pady=2)
        ttk.Button(act_col, text="Clear 🗑", command=self._clear_chat,
                   width=9).pack(pady=2)

        outer.columnconfigure(0, weight=1)

    # ------------------------------------------------------------------
    # Chat display helpers
    # ------------------------------------------------------------------

    def _append(self, label: str, body: str, role: str,
                model: str | None = None) -> None:
        """Append a complete message block to the chat display."""
        self._chat.config(state=tk.NORMAL)
        if self._chat.get("1.0", tk.END).strip():
            self._chat.insert(tk.END, "\n\n")

        tag_map = {
            "user":      ("user_lbl", "user_msg"),
            "assistant": ("asst_lbl", "asst_msg"),
            "system":    ("sys_lbl",  "sys_msg"),
            "error":     ("sys_lbl",  "err_msg"),
        }
        lbl_tag, body_tag = tag_map.get(role, ("sys_lbl", "sys_msg"))

        self._chat.insert(tk.END, label, lbl_tag)
        if model:
            self._chat.insert(tk.END, f"  {model}", "model_lbl")
        self._chat.insert(tk.END, "\n")
        if body:
            self._chat.insert(tk.END, body, body_tag)
        self._chat.config(state=tk.DISABLED)
        self._chat.see(tk.END)

    def _show_partial(self, text: str, model: str | None) -> None:
        """Replace the in-progress assistant block with the latest snapshot."""
        if not self._partial_open:
            self._append("Assistant:", "", "assistant", model)
            self._chat.mark_set("partial_start", "end-1c")
            self._chat.mark_gravity("partial_start", tk.LEFT)
            # Just past the "Assistant:" label; the model tag follows it.
            self._chat.mark_set(
                "partial_model",
                f"partial_start -1 lines linestart +{len('Assistant:')}c",
            )
            self._chat.mark_gravity("partial_model", tk.LEFT)
            self._partial_open = True
            self._partial_model = model
        self._chat.config(state=tk.NORMAL)
        if model and model != self._partial_model:
            self._chat.delete("partial_model", "partial_model lineend")
            self._chat.insert("partial_model", f"  {model}", "model_lbl")
            self._partial_model = model
        self._chat.delete("partial_start", tk.END)
        self._chat.insert("partial_start", text, "asst_msg")
        self._chat.config(state=tk.DISABLED)
        self._chat.see(tk.END)

    def _sys_msg(self, text: str) -> None:
        self._append("ℹ️  System", text, "system")

    def _render_history(self) -> None:
        """Redraw the transcript from the conversation store."""
        self._chat.config(state=tk.NORMAL)
        self._chat.delete("1.0", tk.END)
        self._chat.config(state=tk.DISABLED)
        self._partial_open = False
        self._partial_model = None
        for msg in self._store:
            self._append_message(msg)

    def _append_message(self, msg: Message) -> None:
        labels = {"user": "You:", "assistant": "Assistant:"}
        self._append(labels.get(msg.role, "ℹ️  System"), msg.content,
                     msg.role, msg.model)

    def _set_status(self, text: str) -> None:
        """Show *text* in the status bar for a few seconds."""
        self._status_var.set(text)
        if self._status_after is not None:
            self.root.after_cancel(self._status_after)
        self._status_after = self.root.after(
            STATUS_CLEAR_MS, lambda: self._status_var.set(""),
        )

    # ------------------------------------------------------------------
    # ChatView — called from the worker thread
    # ------------------------------------------------------------------

    def render_partial(self, text: str, model: str | None) -> None:
        self._queue.put(("partial", (text, model)))

    def report_status(self, message: str) -> None:
        self._queue.put(("status", message))

    def navigate_for_auth(self, target: str) -> None:
        self._queue.put(("auth", target))

    # ------------------------------------------------------------------
    # Queue pump (bridges worker thread → main thread)
    # ------------------------------------------------------------------

    def _pump_queue(self) -> None:
        try:
            while True:
                kind, payload = self._queue.get_nowait()
                if kind == "partial":
                    self._show_partial(*payload)
                elif kind == "status":
                    self._set_status(payload)
                    if payload.startswith("Error:"):
                        self._last_error = payload
                elif kind == "auth":
                    self._open_auth_page(payload)
                elif kind == "done":
                    if not payload:
                        # The user turn was rolled back; redraw to match.
                        self._render_history()
                        if self._last_error:
                            self._append("⚠️  Error", self._last_error, "error")
                    self._finish_exchange()
                elif kind == "error":
                    self._append("⚠️  Error", payload, "error")
                    self._finish_exchange()
        except queue.Empty:
            pass
        self.root.after(40, self._pump_queue)

    def _finish_exchange(self) -> None:
        self._busy = False
        self._last_error = None
        self._cancel = None
        self._partial_open = False
        self._partial_model = None
        self._send_btn.config(state=tk.NORMAL)
        self._stop_btn.config(state=tk.DISABLED)
        self._input.config(state=tk.NORMAL)
        self._input.focus_set()

    def _open_auth_page(self, target: str) -> None:
        url = urljoin(API_URL, target)
        self._sys_msg(
            "Redirecting to authenticate...\n"
            "After signing in, copy the address you land on and use "
            "Settings → Sign in with Token… to finish."
        )
        log.info("[APP] Opening authentication page %s", url)
        webbrowser.open(url)

    # ------------------------------------------------------------------
    # Token / auth management
    # ------------------------------------------------------------------

    def _check_saved_token(self) -> None:
        if self._credentials.load():
            self._set_status("Authenticated successfully!")
            if self._store.has_pending_user_turn():
                self._start_worker(self._coordinator.resume_pending)
        else:
            self._sys_msg(
                "Welcome to Peerwave Chat!\n"
                "Type a message to start. You will be asked to sign in "
                "when the service needs credits."
            )

    def _sign_in(self) -> None:
        text = simpledialog.askstring(
            "Sign in",
            "Paste the access token, or the full address you were sent "
            "back to (…#token=…):",
            parent=self.root,
        )
        if text is None:
            return
        token = parse_token_input(text)
        if not token:
            messagebox.showerror("Sign in", "No token found in that input.")
            return
        self._credentials.set(token)
        self._set_status("Authenticated successfully!")
        if not self._busy and self._store.has_pending_user_turn():
            self._start_worker(self._coordinator.resume_pending)

    def _clear_token(self) -> None:
        self._credentials.clear()
        self._sys_msg("Saved token removed.")

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _on_enter_key(self, event: tk.Event) -> str | None:
        # Shift+Enter → insert a newline (default behaviour)
        if event.state & 0x1:  # Shift held
            return None
        self._send()
        return "break"

    def _send(self) -> None:
        if self._busy:
            return
        text = self._input.get("1.0", tk.END).strip()
        if not text:
            return
        self._input.delete("1.0", tk.END)
        self._append("You:", text, "user")
        self._start_worker(lambda cancel: self._coordinator.submit(text, cancel))

    def _stop(self) -> None:
        if self._cancel is not None:
            self._cancel.set()

    def _start_worker(self, action) -> None:
        self._busy = True
        self._cancel = threading.Event()
        self._send_btn.config(state=tk.DISABLED)
        self._stop_btn.config(state=tk.NORMAL)
        self._input.config(state=tk.DISABLED)
        threading.Thread(
            target=self._worker, args=(action, self._cancel), daemon=True,
        ).start()

    def _worker(self, action, cancel: threading.Event) -> None:
        """Background thread: run one exchange and report back via queue."""
        try:
            ok = action(cancel)
            log.debug("[APP] Exchange finished (ok=%s)", ok)
            self._queue.put(("done", ok))
        except Exception as exc:  # noqa: BLE001
            error_msg = (
                f"{type(exc).__name__}: {exc}\n"
                f"  This is an unexpected error; see the log for details."
            )
            log.error("[APP] Unexpected error in _worker: %s", error_msg,
                      exc_info=True)
            self._queue.put(("error", error_msg))

    # ------------------------------------------------------------------
    # Conversation management
    # ------------------------------------------------------------------

    def _clear_chat(self) -> None:
        if self._busy:
            return
        if not messagebox.askyesno(
            "Clear Conversation",
            "Are you sure you want to clear the conversation?",
        ):
            return
        self._store.clear()
        self._render_history()
        self._set_status("Conversation cleared")

    def _on_close(self) -> None:
        """Stop any exchange, close storage and exit."""
        self._stop()
        self._storage.close()
        self.root.destroy()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the Tk main loop."""
        self.root.mainloop()
