"""Tests for src/orchestrator/diagnostics.py — error context capture."""

from src.orchestrator.diagnostics import (
    ERROR_CONTEXT_FILENAME,
    capture_error_context,
    write_error_context,
)


def _raise_and_capture(repo_path, iteration=4, log_tail=""):
    try:
        raise RuntimeError("pipeline exploded")
    except RuntimeError as e:
        return capture_error_context(str(repo_path), e, iteration, log_tail=log_tail)


class TestCaptureErrorContext:
    def test_captures_repository_state(self, git_repo):
        (git_repo / "app.py").write_text("VALUE = 9\n")
        context = _raise_and_capture(git_repo, log_tail="[12:00:00] Iteration 4 starting")
        assert context.error_type == "RuntimeError"
        assert context.error == "pipeline exploded"
        assert "_raise_and_capture" in context.traceback
        assert "app.py" in context.git_status
        assert "initial commit" in context.git_log
        assert "app.py" in context.diff_stat

    def test_text_sections(self, git_repo):
        text = _raise_and_capture(git_repo, log_tail="line one").to_text()
        for header in ("=== Error ===", "=== Git status ===", "=== Recent commits ===", "=== Last 50 log lines ==="):
            assert header in text
        assert "RuntimeError: pipeline exploded" in text
        assert "line one" in text
        assert "=== Diff stat ===\n(empty)" in text

    def test_non_repository_still_yields_context(self, tmp_path):
        plain = tmp_path / "plain"
        plain.mkdir()
        context = _raise_and_capture(plain)
        assert context.error == "pipeline exploded"


class TestWriteErrorContext:
    def test_writes_file(self, git_repo, tmp_path):
        state = tmp_path / "state"
        path = write_error_context(_raise_and_capture(git_repo), state)
        assert path == state / ERROR_CONTEXT_FILENAME
        assert "pipeline exploded" in path.read_text()
