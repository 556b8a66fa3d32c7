from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import tree_hasher
from tree_hasher import (
    STATUS_ALGORITHM_NOT_AVAILABLE,
    STATUS_COMMAND_LINE_ERROR,
    STATUS_HASH_ERROR,
    STATUS_IO_ERROR,
    STATUS_MISSING_DIRECTORY,
    STATUS_OK,
    main,
)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


def test_update_then_verify_succeeds(tmp_path: Path, capsys: pytest.CaptureFixture):
    _write_file(tmp_path / "a.txt", b"alpha")
    assert main(["--update", "-l", "WARNING", str(tmp_path)]) == STATUS_OK
    assert (tmp_path / ".hashes").exists()
    assert main(["--verify", "-l", "WARNING", str(tmp_path)]) == STATUS_OK
    err = capsys.readouterr().err
    assert "Files hashed:" in err
    assert "Operation successful." in err


def test_verification_error_exit_code(tmp_path: Path, capsys: pytest.CaptureFixture):
    target = tmp_path / "a.txt"
    _write_file(target, b"alpha")
    assert main(["-u", "-l", "WARNING", str(tmp_path)]) == STATUS_OK
    info = target.stat()
    target.write_bytes(b"omega")
    os.utime(target, ns=(info.st_atime_ns, info.st_mtime_ns))

    assert main(["-v", "-l", "WARNING", str(tmp_path)]) == STATUS_HASH_ERROR
    assert "There were verification errors." in capsys.readouterr().err


def test_other_errors_exit_code(tmp_path: Path):
    _write_file(tmp_path / "a.txt", b"alpha")
    (tmp_path / ".hashes").write_text("not a record\n", encoding="utf-8")
    assert main(["-v", "-l", "ERROR", str(tmp_path)]) == STATUS_IO_ERROR


def test_missing_directory_exit_code(tmp_path: Path):
    assert main(["-u", "-l", "CRITICAL", str(tmp_path / "missing")]) == STATUS_MISSING_DIRECTORY


def test_unknown_algorithm_exit_code(tmp_path: Path):
    assert main(["-u", "-l", "CRITICAL", "-a", "NOPE-999", str(tmp_path)]) == STATUS_ALGORITHM_NOT_AVAILABLE


def test_mode_is_required(tmp_path: Path):
    with pytest.raises(SystemExit) as info:
        main([str(tmp_path)])
    assert info.value.code == STATUS_COMMAND_LINE_ERROR


def test_unknown_log_level_is_rejected(tmp_path: Path):
    with pytest.raises(SystemExit) as info:
        main(["-u", "-l", "CHATTY", str(tmp_path)])
    assert info.value.code == STATUS_COMMAND_LINE_ERROR


def test_bad_hashfile_name_is_a_command_line_error(tmp_path: Path):
    assert main(["-u", "-l", "CRITICAL", "-f", "sub/x", str(tmp_path)]) == STATUS_COMMAND_LINE_ERROR


def test_manifest_write_failure_exit_code(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    _write_file(tmp_path / "a.txt", b"alpha")

    def _fail(src, dst):
        raise OSError("read-only file system")

    monkeypatch.setattr(os, "replace", _fail)
    assert main(["-u", "-l", "CRITICAL", str(tmp_path)]) == STATUS_IO_ERROR


@pytest.mark.skipif(sys.platform != "linux", reason="needs arbitrary byte file names")
def test_undecodable_file_name_is_an_other_error(tmp_path: Path):
    _write_file(tmp_path / "ok.txt", b"fine")
    try:
        with open(os.path.join(os.fsencode(tmp_path), b"bad\xff.txt"), "wb") as handle:
            handle.write(b"bytes")
    except OSError:
        pytest.skip("file system rejects names that are not valid UTF-8")

    assert main(["-u", "-l", "CRITICAL", str(tmp_path)]) == STATUS_IO_ERROR
    assert (tmp_path / ".hashes").read_text(encoding="utf-8").startswith("ok.txt|")
    assert not (tmp_path / ".hashes.tmp").exists()


def test_options_reach_the_config(tmp_path: Path):
    _write_file(tmp_path / "a.txt", b"alpha")
    empty = tmp_path / "empty"
    empty.mkdir()
    code = main(["-u", "-l", "WARNING", "-a", "SHA-256", "-f", "SUMS", "--skip-empty-manifests", str(tmp_path)])
    assert code == STATUS_OK
    line = (tmp_path / "SUMS").read_text(encoding="utf-8").strip()
    assert line.split("|")[3] == "SHA-256"
    assert not (empty / "SUMS").exists()


def test_gui_flag_hands_directories_to_panel(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    launched = {}

    def _fake_launch(args):
        launched["directories"] = list(args.directories)
        launched["update"] = args.update
        return STATUS_OK

    monkeypatch.setattr(tree_hasher, "_launch_gui", _fake_launch)
    assert main(["--gui", "-u", str(tmp_path)]) == STATUS_OK
    assert launched == {"directories": [str(tmp_path)], "update": True}


def test_gui_launch_builds_request(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    pytest.importorskip("ttkbootstrap")
    import plugins.base

    shown = []
    monkeypatch.setattr(plugins.base, "run_plugin_standalone", lambda plugin, request: shown.append((plugin, request)))
    assert main(["--gui", "-v", "--follow-symlinks", str(tmp_path)]) == STATUS_OK

    (plugin, request), = shown
    assert plugin.key == "tree_hasher"
    assert request.directories == [tmp_path]
    assert (request.update, request.verify) == (False, True)
    assert request.follow_symlinks and not request.skip_empty_manifests


def test_cli_json_output_schema(tmp_path: Path):
    first = tmp_path / "first"
    second = tmp_path / "second"
    _write_file(first / "a.txt", b"hello")
    _write_file(second / "nested" / "b.txt", b"world!")

    cmd = [
        sys.executable,
        "-m",
        "tree_hasher",
        "--update",
        "--verify",
        "--loglevel",
        "OFF",
        "--out",
        "JSON",
        str(first),
        str(second),
    ]
    proc = subprocess.run(cmd, capture_output=True, text=True, check=True, cwd=str(ROOT))
    payload = json.loads(proc.stdout)
    assert set(payload.keys()) == {"operation", "directories", "stats"}
    assert payload["operation"] == "Updating and verifying"
    assert payload["stats"]["files_hashed"] == 2
    assert payload["stats"]["bytes_hashed"] == 11
    assert payload["stats"]["verification_errors"] == 0
    assert proc.returncode == 0
    assert (second / "nested" / ".hashes").exists()
