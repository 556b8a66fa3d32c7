"""Standalone window for the tree hasher panel.

The panel opens from ``tree-hasher --gui`` or from a file-manager context
menu, which passes the chosen folder as a bare path.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence


@dataclass
class LaunchRequest:
    """Directories and run modes to pre-fill when the panel opens."""

    directories: List[Path] = field(default_factory=list)
    update: bool = False
    verify: bool = False
    skip_empty_manifests: bool = False
    follow_symlinks: bool = False
    advanced: bool = False

    @property
    def modes_given(self) -> bool:
        return self.update or self.verify

    @property
    def wants_advanced(self) -> bool:
        return self.advanced or self.skip_empty_manifests or self.follow_symlinks


def parse_launch_args(argv: Sequence[str]) -> LaunchRequest:
    """Build a :class:`LaunchRequest` from window arguments.

    Directories may be positional or given with ``--target``. Unknown options
    are ignored so that context-menu entries written for other tools still
    open the window.
    """

    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("directories", nargs="*")
    parser.add_argument("--target", action="append", default=[])
    parser.add_argument("--update", action="store_true")
    parser.add_argument("--verify", action="store_true")
    parser.add_argument("--skip-empty-manifests", action="store_true")
    parser.add_argument("--follow-symlinks", action="store_true")
    parser.add_argument("--advanced", action="store_true")
    args, _unknown = parser.parse_known_args(list(argv))
    return LaunchRequest(
        directories=[Path(d).expanduser() for d in args.directories + args.target],
        update=args.update,
        verify=args.verify,
        skip_empty_manifests=args.skip_empty_manifests,
        follow_symlinks=args.follow_symlinks,
        advanced=args.advanced,
    )


@dataclass
class AppContext:
    app_name: str
    platform: str
    advanced: bool = False


class ToolPlugin(Protocol):
    key: str
    title: str

    def make_panel(self, master, context: AppContext) -> Any:
        """Build and return the panel inside ``master``."""

    def start(self, request: LaunchRequest) -> None:
        """Pre-fill the panel once the window is showing."""

    def cleanup(self) -> None:
        """Wait for background work before the window closes."""


def run_plugin_standalone(plugin: ToolPlugin, request: Optional[LaunchRequest] = None) -> None:
    """Show ``plugin`` in its own window and block until it is closed."""

    import platform
    import sys

    try:
        import ttkbootstrap as tb
        from ttkbootstrap.dialogs import Messagebox
    except ImportError as exc:  # pragma: no cover - import error propagated
        raise RuntimeError("Install dependencies: pip install ttkbootstrap") from exc

    if request is None:
        request = parse_launch_args(sys.argv[1:])
    ctx = AppContext(app_name=plugin.title, platform=platform.system(), advanced=request.wants_advanced)

    window = tb.Window(title=ctx.app_name, themename="darkly")
    window.geometry("1000x700")

    container = tb.Frame(window, padding=8)
    container.pack(fill="both", expand=True)
    plugin.make_panel(container, ctx).pack(fill="both", expand=True)

    def _start_tool():
        try:
            plugin.start(request)
        except Exception as exc:  # pragma: no cover - GUI error path
            Messagebox.show_error(message=str(exc), title="Tool start error")

    def _on_close():
        try:
            plugin.cleanup()
        finally:
            window.destroy()

    window.after(50, _start_tool)
    window.protocol("WM_DELETE_WINDOW", _on_close)
    window.mainloop()
