import asyncio
import threading
import tkinter as tk
from tkinter import scrolledtext
from tkinter import ttk

from ask_core.api.service import ChatService
from ask_core.config.settings import settings
from ask_core.domain.exceptions import ConfigurationError
from ask_core.gui.formatting import has_finished_reply, message_footer, window_title
from ask_core.infrastructure.storage.json_store import JsonHistoryStore
from ask_core.providers.registry import model_choices


class LoopThread:
    """在后台线程运行 asyncio 事件循环，流式管线全部跑在这个循环上。"""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, daemon=True)
        self._thread.start()

    def call(self, fn, *args):
        """在事件循环线程上执行 fn，返回 concurrent.futures.Future。"""

        async def runner():
            return fn(*args)

        return asyncio.run_coroutine_threadsafe(runner(), self.loop)

    def submit(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def stop(self):
        self.loop.call_soon_threadsafe(self.loop.stop)


class App:
    def __init__(self, root):
        self.root = root
        self.root.title(window_title())
        self.titled = False
        self.worker = LoopThread()
        self.service = ChatService(history_store=JsonHistoryStore())
        self.service.subscribe(lambda timeline: self.root.after(0, self.render, timeline))

        main = tk.Frame(root)
        main.pack(fill=tk.BOTH, expand=True)
        top = tk.Frame(main)
        top.pack(fill=tk.X)
        tk.Label(top, text="model").pack(side=tk.LEFT)
        self.model = ttk.Combobox(top, values=model_choices())
        self.model.set(self.service.model)
        self.model.pack(side=tk.LEFT)
        tk.Label(top, text="api key").pack(side=tk.LEFT)
        self.key_entry = tk.Entry(top, show="*")
        self.key_entry.pack(side=tk.LEFT, fill=tk.X, expand=True)
        tk.Button(top, text="Save", command=self.on_update_key).pack(side=tk.LEFT)
        tk.Button(top, text="New chat", command=self.on_reset).pack(side=tk.LEFT)

        self.chat = scrolledtext.ScrolledText(main, width=80, height=24, wrap=tk.WORD)
        self.chat.pack(fill=tk.BOTH, expand=True)
        self.chat.tag_config("user", foreground="#1a73e8")
        self.chat.tag_config("assistant", foreground="#34a853")
        self.chat.tag_config("system", foreground="#5f6368")
        self.chat.tag_config("error", foreground="#d93025")

        bottom = tk.Frame(main)
        bottom.pack(fill=tk.X)
        self.entry = tk.Entry(bottom)
        self.entry.pack(side=tk.LEFT, fill=tk.X, expand=True)
        self.entry.bind("<Return>", self.on_send_event)
        self.entry.bind("<Escape>", lambda _event: self.on_stop())
        self.send_btn = tk.Button(bottom, text="Send", command=self.on_send)
        self.send_btn.pack(side=tk.LEFT)
        self.stop_btn = tk.Button(bottom, text="Stop", command=self.on_stop, state=tk.DISABLED)
        self.stop_btn.pack(side=tk.LEFT)
        self.retry_btn = tk.Button(bottom, text="Try again", command=self.on_retry, state=tk.DISABLED)
        self.retry_btn.pack(side=tk.LEFT)
        self.status = tk.Label(main, text="Ready", anchor=tk.W)
        self.status.pack(fill=tk.X)

        self.root.protocol("WM_DELETE_WINDOW", self.on_close)
        self.worker.call(self.service.restore)
        if not settings.api_key:
            self.status.config(text="Set an API key to start chatting")

    def render(self, timeline):
        self.chat.delete(1.0, tk.END)
        for m in timeline:
            tag = "error" if m.is_error else m.role
            self.chat.insert(tk.END, f"{m.role}: {m.content}\n", tag)
            footer = message_footer(m)
            if footer:
                self.chat.insert(tk.END, f"[{footer}]\n", "system")
        self.chat.see(tk.END)
        thinking = any(m.is_thinking for m in timeline)
        has_error = any(m.is_error for m in timeline)
        self.stop_btn.config(state=tk.NORMAL if thinking else tk.DISABLED)
        self.retry_btn.config(state=tk.NORMAL if has_error and not thinking else tk.DISABLED)
        self.status.config(text="Thinking..." if thinking else "Ready")
        if not self.titled and not thinking and has_finished_reply(timeline):
            self.titled = True
            future = self.worker.submit(self.service.generate_title())
            future.add_done_callback(lambda f: self.root.after(0, self.on_title, f))

    def on_title(self, future):
        if future.exception() is None and future.result():
            self.root.title(window_title(future.result()))

    def on_send(self):
        text = self.entry.get().strip()
        if not text:
            return
        self.service.model = self.model.get().strip() or self.service.model
        future = self.worker.call(self.service.send, text)
        future.add_done_callback(lambda f: self.root.after(0, self.on_issued, f))

    def on_send_event(self, event):
        self.on_send()
        return "break"

    def on_issued(self, future):
        err = future.exception()
        if isinstance(err, ConfigurationError):
            self.status.config(text=f"Configuration error: {err.message}")
            return
        if err:
            self.status.config(text=f"Error: {err}")
            return
        self.entry.delete(0, tk.END)

    def on_stop(self):
        self.worker.call(self.service.cancel)

    def on_retry(self):
        future = self.worker.call(self.service.retry)
        future.add_done_callback(lambda f: self.root.after(0, self.on_issued, f))

    def on_reset(self):
        self.worker.call(self.service.reset)
        self.titled = False
        self.root.title(window_title())

    def on_update_key(self):
        key = self.key_entry.get().strip()
        if not key:
            return
        self.worker.call(self.service.update_api_key, key)
        self.key_entry.delete(0, tk.END)
        self.status.config(text="API key updated")

    def on_close(self):
        self.worker.call(self.service.cancel)
        self.worker.stop()
        self.root.destroy()


def main():
    root = tk.Tk()
    App(root)
    root.mainloop()


if __name__ == "__main__":
    main()
