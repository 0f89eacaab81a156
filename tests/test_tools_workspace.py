"""Tests for src/tools/workspace.py — the repository-tool collaborator."""

import pytest

from src.core.config import RepoConfig
from src.core.exceptions import ToolError
from src.tools.workspace import RepositoryTools
from tests.conftest import init_git_repo


@pytest.fixture
def repo(tmp_path):
    path = tmp_path / "ws"
    path.mkdir()
    return init_git_repo(path, {
        "src/orders.py": "class OrderService:\n    def total(self):\n        return 0\n",
        "src/util.py": "def helper():\n    return 'orders'\n",
        "tests/test_orders.py": "def test_total():\n    assert True\n",
    })


def _tools(repo, **overrides) -> RepositoryTools:
    settings = dict(test_command="echo tests-ran", command_timeout_seconds=30)
    settings.update(overrides)
    return RepositoryTools(repo, RepoConfig(**settings))


class TestSearchFiles:
    def test_glob_on_names(self, repo):
        assert _tools(repo).search_files("*.py") == [
            "src/orders.py", "src/util.py", "tests/test_orders.py",
        ]

    def test_content_match(self, repo):
        assert "src/util.py" in _tools(repo).search_files("'orders'")

    def test_invalid_regex_falls_back_to_literal(self, repo):
        assert _tools(repo).search_files("total(") == ["src/orders.py", "tests/test_orders.py"]

    def test_empty_pattern(self, repo):
        with pytest.raises(ToolError):
            _tools(repo).search_files(" ")


class TestWriteAndDiff:
    def test_write_then_show_diff(self, repo):
        tools = _tools(repo)
        assert tools.show_diff() == "(no changes)"
        message = tools.write_file("src/util.py", "def helper():\n    return 'x'\n")
        assert message.startswith("wrote ")
        assert "return 'x'" in tools.show_diff()

    def test_write_outside_repo_rejected(self, repo):
        with pytest.raises(ToolError):
            _tools(repo).write_file("../escape.py", "x")


class TestCommands:
    def test_run_tests(self, repo):
        assert _tools(repo).run_tests() == "[exit code 0]\ntests-ran"

    def test_failing_tests_reported(self, repo):
        out = _tools(repo, test_command="echo broken; exit 1").run_tests()
        assert out.startswith("[exit code 1]")

    def test_coverage_not_configured(self, repo):
        assert _tools(repo).get_coverage() == "coverage command not configured"

    def test_build_defaults_to_success(self, repo):
        assert _tools(repo).build().success

    def test_build_failure(self, repo):
        result = _tools(repo, build_command="echo nope 1>&2; exit 2").build()
        assert result.return_code == 2
        assert "nope" in result.output

    def test_timeout_becomes_result(self, repo):
        tools = _tools(repo, test_command="sleep 5", command_timeout_seconds=1)
        result = tools.test()
        assert result.timed_out
        assert result.return_code == 124
        assert tools.run_tests().startswith("[timed out]")


class TestGetSymbols:
    def test_declaration_fallback(self, repo):
        symbols = _tools(repo).get_symbols("src/orders.py")
        assert symbols.splitlines() == ["1: class OrderService:", "2: def total(self):"]

    def test_external_command(self, repo):
        out = _tools(repo, symbols_command="echo analysing {path}").get_symbols("src/util.py")
        assert "analysing" in out
        assert out.rstrip().endswith("src/util.py")

    def test_missing_file(self, repo):
        with pytest.raises(ToolError):
            _tools(repo).get_symbols("src/missing.py")
