from __future__ import annotations

import csv
import hashlib
import json
import queue
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import ttkbootstrap as tb
from ttkbootstrap.dialogs import Messagebox

from plugins.base import AppContext, LaunchRequest
from .hash_manifest import DEFAULT_MANIFEST_NAME
from .tree_hasher_core import (
    DEFAULT_ALGORITHM,
    AlgorithmUnavailableError,
    ConfigurationError,
    HasherConfig,
    ScanEvent,
    Stats,
    TreeHasher,
    check_roots,
)

_STATUS_TAGS = {
    "VERIFIED": "success",
    "ADDED": "info",
    "UPDATED": "info",
    "UNHASHED": "secondary",
    "MODIFIED": "warning",
    "MISSING": "warning",
    "FAILED": "danger",
    "NO_ALGORITHM": "danger",
    "UNREADABLE": "danger",
    "SKIPPED": "danger",
}

_PROBLEM_STATUSES = {"FAILED", "NO_ALGORITHM", "UNREADABLE", "SKIPPED"}

_REPORT_FIELDS = ["status", "path", "detail"]


def _algorithm_choices() -> Tuple[str, ...]:
    common = ["MD5", "SHA-1", "SHA-256", "SHA-512"]
    extra = sorted(
        name for name in hashlib.algorithms_guaranteed
        if not name.startswith("shake") and name not in {"md5", "sha1", "sha256", "sha512"}
    )
    return tuple(common + extra)


def _event_matches(event: ScanEvent, status: str, search: str) -> bool:
    if status == "Problems" and event.status not in _PROBLEM_STATUSES:
        return False
    if status not in {"All", "Problems"} and event.status != status:
        return False
    needle = search.lower()
    if needle and needle not in str(event.path).lower() and needle not in event.detail.lower():
        return False
    return True


class _EventStore:
    def __init__(self) -> None:
        self.events: List[ScanEvent] = []

    def add(self, event: ScanEvent) -> None:
        self.events.append(event)

    def filtered(self, status: str = "All", search: str = "") -> List[ScanEvent]:
        return [event for event in self.events if _event_matches(event, status, search)]

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for event in self.events:
            counts[event.status] = counts.get(event.status, 0) + 1
        return counts

    def report_rows(self, events: Optional[List[ScanEvent]] = None) -> List[Dict[str, str]]:
        return [
            {"status": event.status, "path": str(event.path), "detail": event.detail}
            for event in (self.events if events is None else events)
        ]

    def write_report(self, path: Path, events: Optional[List[ScanEvent]] = None) -> None:
        rows = self.report_rows(events)
        if path.suffix.lower() == ".csv":
            with path.open("w", encoding="utf-8", newline="") as handle:
                writer = csv.DictWriter(handle, fieldnames=_REPORT_FIELDS)
                writer.writeheader()
                writer.writerows(rows)
        else:
            with path.open("w", encoding="utf-8") as handle:
                json.dump(rows, handle, ensure_ascii=False, indent=2)


def _format_summary(stats: Stats) -> str:
    return (
        f"Completed – hashed {stats.files_hashed} files "
        f"({stats.verification_errors} verification errors, {stats.other_errors} other errors)"
    )


class TreeHasherTool:
    key = "tree_hasher"
    title = "Tree Hasher"
    description = (
        "Create, update and verify per-folder digest manifests for whole directory trees."
    )

    def __init__(self) -> None:
        self.ctx: Optional[AppContext] = None
        self._advanced = False

        self.panel: Optional[tb.Frame] = None
        self.dirs_list = None
        self.update_var = None
        self.verify_var = None
        self.algorithm_var = None
        self.manifest_var = None
        self.skip_empty_var = None
        self.follow_symlinks_var = None
        self.summary_var = None
        self.progress_var = None
        self.filter_var = None
        self.search_var = None
        self.advanced_frame = None
        self.advanced_var = None
        self.run_button = None
        self.results_tree = None

        self._worker: Optional[threading.Thread] = None
        self._ui_queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self._store = _EventStore()

    # ------------------------------------------------------------------ UI --
    def make_panel(self, master, context: AppContext):
        import tkinter as tk
        from tkinter import filedialog

        self.ctx = context
        self._advanced = context.advanced

        root = tb.Frame(master)
        self.panel = root

        dirs_frame = tb.Labelframe(root, text="Directories", padding=8)
        dirs_frame.pack(fill="both", expand=False, padx=8, pady=(10, 6))
        self.dirs_list = tk.Listbox(dirs_frame, height=5)
        self.dirs_list.pack(fill="both", expand=True, side="left", padx=(0, 6))
        buttons = tb.Frame(dirs_frame)
        buttons.pack(side="right", fill="y")
        tb.Button(buttons, text="Add…", command=lambda: self._add_path(filedialog.askdirectory)).pack(fill="x", pady=2)
        tb.Button(buttons, text="Remove", command=self._remove_selected).pack(fill="x", pady=2)
        tb.Button(buttons, text="Clear", command=lambda: self.dirs_list.delete(0, "end")).pack(fill="x", pady=2)

        options = tb.Labelframe(root, text="Options", padding=8)
        options.pack(fill="x", expand=False, padx=8, pady=(0, 6))
        self.update_var = tk.BooleanVar(value=True)
        self.verify_var = tk.BooleanVar(value=True)
        self.algorithm_var = tk.StringVar(value=DEFAULT_ALGORITHM)
        self.manifest_var = tk.StringVar(value=DEFAULT_MANIFEST_NAME)
        self.skip_empty_var = tk.BooleanVar(value=False)
        self.follow_symlinks_var = tk.BooleanVar(value=False)
        modes = tb.Frame(options)
        modes.pack(fill="x")
        tb.Checkbutton(modes, text="Update hashes", variable=self.update_var).pack(side="left")
        tb.Checkbutton(modes, text="Verify hashes", variable=self.verify_var).pack(side="left", padx=(12, 0))
        row = tb.Frame(options)
        row.pack(fill="x", pady=(6, 0))
        tb.Label(row, text="Algorithm:").pack(side="left")
        tb.Combobox(row, width=14, textvariable=self.algorithm_var, values=_algorithm_choices()).pack(side="left", padx=(4, 12))
        tb.Label(row, text="Manifest file:").pack(side="left")
        tb.Entry(row, width=16, textvariable=self.manifest_var).pack(side="left", padx=(4, 0))
        self.advanced_var = tk.BooleanVar(value=self._advanced)
        tb.Checkbutton(
            row,
            text="Advanced",
            variable=self.advanced_var,
            bootstyle="round-toggle",
            command=lambda: self.show_advanced(bool(self.advanced_var.get())),
        ).pack(side="right")

        self.advanced_frame = tb.Frame(options)
        tb.Checkbutton(
            self.advanced_frame,
            text="Skip writing manifests for empty folders",
            variable=self.skip_empty_var,
        ).pack(anchor="w", pady=(2, 0))
        tb.Checkbutton(
            self.advanced_frame,
            text="Follow symbolic links",
            variable=self.follow_symlinks_var,
        ).pack(anchor="w", pady=(2, 0))

        actions = tb.Frame(root)
        actions.pack(fill="x", padx=8, pady=(0, 6))
        self.run_button = tb.Button(actions, text="Run", bootstyle="success", command=self._start_run)
        self.run_button.pack(side="left")
        self.summary_var = tk.StringVar(value="Ready.")
        self.progress_var = tk.StringVar(value="Idle")
        summary_frame = tb.Frame(actions)
        summary_frame.pack(side="right")
        tb.Label(summary_frame, textvariable=self.summary_var, bootstyle="secondary").pack(anchor="e")
        tb.Label(summary_frame, textvariable=self.progress_var, bootstyle="info").pack(anchor="e")

        results = tb.Labelframe(root, text="Results", padding=4)
        results.pack(fill="both", expand=True, padx=8, pady=(0, 8))
        filter_row = tb.Frame(results)
        filter_row.pack(fill="x", pady=(0, 4))
        self.filter_var = tk.StringVar(value="All")
        filter_combo = tb.Combobox(
            filter_row,
            width=14,
            textvariable=self.filter_var,
            state="readonly",
            values=("All", "Problems") + tuple(_STATUS_TAGS),
        )
        filter_combo.pack(side="left")
        filter_combo.bind("<<ComboboxSelected>>", lambda _evt: self._refresh_results())
        self.search_var = tk.StringVar(value="")
        tb.Entry(filter_row, textvariable=self.search_var).pack(side="left", fill="x", expand=True, padx=(6, 0))
        self.search_var.trace_add("write", lambda *_: self._refresh_results())
        tb.Button(filter_row, text="Save report…", bootstyle="secondary", command=self._save_report).pack(side="right")

        columns = ("status", "path", "detail")
        self.results_tree = tb.Treeview(results, columns=columns, show="headings")
        self.results_tree.heading("status", text="Status")
        self.results_tree.heading("path", text="Path")
        self.results_tree.heading("detail", text="Details")
        self.results_tree.column("status", width=110, anchor="w")
        self.results_tree.column("path", width=360, anchor="w")
        self.results_tree.column("detail", anchor="w")
        self.results_tree.pack(fill="both", expand=True)

        style_manager = tb.Style()
        for status, style in _STATUS_TAGS.items():
            color = getattr(getattr(style_manager, "colors", None), style, None)
            if color:
                self.results_tree.tag_configure(status, foreground=color)

        self.show_advanced(self._advanced)
        return root

    # --------------------------------------------------------------- actions --
    def start(self, request: LaunchRequest):
        if self.dirs_list is None:
            return
        for directory in request.directories:
            if directory.is_dir():
                self.dirs_list.insert("end", str(directory))
        if request.modes_given:
            self.update_var.set(request.update)
            self.verify_var.set(request.verify)
        self.skip_empty_var.set(request.skip_empty_manifests)
        self.follow_symlinks_var.set(request.follow_symlinks)
        if request.wants_advanced:
            self.show_advanced(True)

    def cleanup(self):
        if self._worker and self._worker.is_alive():
            self._worker.join(timeout=5)

    def show_advanced(self, visible: bool):
        self._advanced = visible
        if self.advanced_var is not None and bool(self.advanced_var.get()) != visible:
            self.advanced_var.set(visible)
        if self.advanced_frame is None:
            return
        if visible:
            self.advanced_frame.pack(fill="x", pady=(6, 0))
        else:
            self.advanced_frame.pack_forget()

    # ----------------------------------------------------------- UI helpers --
    def _add_path(self, chooser):
        path = chooser()
        if path:
            self.dirs_list.insert("end", path)

    def _remove_selected(self):
        for index in reversed(self.dirs_list.curselection()):
            self.dirs_list.delete(index)

    def _directories(self) -> List[Path]:
        if not self.dirs_list:
            return []
        return [Path(self.dirs_list.get(idx)) for idx in range(self.dirs_list.size())]

    def _build_config(self) -> HasherConfig:
        return HasherConfig(
            update=bool(self.update_var.get()),
            verify=bool(self.verify_var.get()),
            algorithm=self.algorithm_var.get().strip() or DEFAULT_ALGORITHM,
            manifest_name=self.manifest_var.get().strip() or DEFAULT_MANIFEST_NAME,
            write_empty_manifests=not self.skip_empty_var.get(),
            follow_symlinks=bool(self.follow_symlinks_var.get()),
        )

    # --------------------------------------------------------------- running --
    def _start_run(self):
        if self._worker and self._worker.is_alive():
            Messagebox.show_info(title=self.title, message="A run is already in progress.")
            return
        directories = self._directories()
        if not directories:
            Messagebox.show_error(title=self.title, message="Add at least one directory.")
            return
        problem = check_roots(directories)
        if problem:
            Messagebox.show_error(title=self.title, message=problem)
            return
        try:
            hasher = TreeHasher(self._build_config(), event_callback=self._enqueue_event)
        except (ConfigurationError, AlgorithmUnavailableError) as exc:
            Messagebox.show_error(title=self.title, message=str(exc))
            return

        self._store = _EventStore()
        if self.results_tree:
            self.results_tree.delete(*self.results_tree.get_children())
        self.summary_var.set(f"{hasher.operation_name}…")
        self.progress_var.set("Starting")
        self.run_button.configure(state="disabled")
        self._worker = threading.Thread(
            target=self._run_hasher,
            args=(hasher, directories),
            name="tree-hasher",
            daemon=True,
        )
        self._worker.start()
        if self.panel:
            self.panel.after(100, self._poll_ui_queue)

    def _run_hasher(self, hasher: TreeHasher, directories: List[Path]) -> None:
        total = Stats.EMPTY
        try:
            for directory in directories:
                self._ui_queue.put(("progress", f"{hasher.operation_name} {directory}"))
                total = total + hasher.scan(directory)
        except Exception as exc:
            self._ui_queue.put(("failed", str(exc)))
            return
        self._ui_queue.put(("done", total))

    def _enqueue_event(self, event: ScanEvent) -> None:
        self._ui_queue.put(("event", event))

    def _poll_ui_queue(self):
        if self.panel is None:
            return
        finished = False
        try:
            while True:
                kind, payload = self._ui_queue.get_nowait()
                if kind == "event":
                    self._handle_event(payload)
                elif kind == "progress":
                    self.progress_var.set(payload)
                elif kind == "done":
                    self._finish_run(payload)
                    finished = True
                elif kind == "failed":
                    self._fail_run(payload)
                    finished = True
        except queue.Empty:
            pass
        if not finished:
            self.panel.after(200, self._poll_ui_queue)

    def _handle_event(self, event: ScanEvent):
        self._store.add(event)
        if self._matches_filter(event):
            self._insert_row(event)

    def _finish_run(self, stats: Stats):
        self.summary_var.set(_format_summary(stats))
        self.progress_var.set(f"{stats.bytes_hashed / (1024 * 1024):.1f} MiB in {stats.runtime}")
        self.run_button.configure(state="normal")
        if stats.verification_errors:
            Messagebox.show_error(title=self.title, message="There were verification errors.")

    def _fail_run(self, message: str):
        self.summary_var.set("Failed.")
        self.progress_var.set("Idle")
        self.run_button.configure(state="normal")
        Messagebox.show_error(title=self.title, message=message)

    def _matches_filter(self, event: ScanEvent) -> bool:
        status = self.filter_var.get() if self.filter_var else "All"
        search = self.search_var.get() if self.search_var else ""
        return _event_matches(event, status, search)

    def _insert_row(self, event: ScanEvent):
        if self.results_tree:
            self.results_tree.insert("", "end", values=(event.status, str(event.path), event.detail), tags=(event.status,))

    def _refresh_results(self):
        if not self.results_tree:
            return
        self.results_tree.delete(*self.results_tree.get_children())
        for event in self._store.filtered(self.filter_var.get(), self.search_var.get()):
            self._insert_row(event)

    def _save_report(self):
        import tkinter.filedialog as fd

        file_path = fd.asksaveasfilename(
            title="Save tree hasher report",
            defaultextension=".json",
            filetypes=(("JSON report", "*.json"), ("CSV report", "*.csv")),
        )
        if not file_path:
            return
        events = self._store.filtered(self.filter_var.get(), self.search_var.get())
        try:
            self._store.write_report(Path(file_path), events)
            Messagebox.show_info(title=self.title, message=f"Report saved to {file_path}")
        except OSError as exc:
            Messagebox.show_error(title=self.title, message=f"Cannot save report: {exc}")


PLUGIN = TreeHasherTool()
