"""Tests for repairloop/cli.py — the console-script launcher."""

import sys

import pytest

import repairloop.cli as launcher
import src.cli


class TestLauncher:
    def test_runs_project_cli(self, monkeypatch):
        calls = []
        monkeypatch.setattr(sys, "path", list(sys.path))
        monkeypatch.setattr(src.cli, "main", lambda: calls.append("main"))
        launcher.main()
        assert calls == ["main"]
        assert sys.path[0] == str(launcher.PROJECT_ROOT)

    def test_refuses_foreign_src_package(self, monkeypatch, tmp_path):
        monkeypatch.setattr(launcher, "PROJECT_ROOT", tmp_path)
        monkeypatch.setattr(sys, "path", list(sys.path))
        with pytest.raises(SystemExit, match="Another installed project"):
            launcher.main()
