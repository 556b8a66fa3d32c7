from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from plugins.base import LaunchRequest, parse_launch_args


def test_launch_args_collect_directories_and_modes(tmp_path: Path):
    request = parse_launch_args(
        [str(tmp_path / "one"), "--target", str(tmp_path / "two"), "--verify", "--follow-symlinks"]
    )
    assert request.directories == [tmp_path / "one", tmp_path / "two"]
    assert (request.update, request.verify) == (False, True)
    assert request.modes_given
    assert request.follow_symlinks
    assert not request.skip_empty_manifests
    assert request.wants_advanced


def test_launch_args_ignore_foreign_options(tmp_path: Path):
    request = parse_launch_args(["--pro", str(tmp_path)])
    assert request.directories == [tmp_path]
    assert not request.modes_given


def test_default_request_keeps_panel_defaults():
    request = LaunchRequest()
    assert request.directories == []
    assert not request.modes_given
    assert not request.wants_advanced
    assert LaunchRequest(advanced=True).wants_advanced
