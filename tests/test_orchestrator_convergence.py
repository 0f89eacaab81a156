"""Tests for src/orchestrator/convergence.py — content hashing and stagnation."""

from src.orchestrator.convergence import ConvergenceTracker, backlog_complete, hash_tree
from tests.conftest import init_git_repo


class TestHashTree:
    def test_stable_and_content_sensitive(self, git_repo):
        first = hash_tree(git_repo)
        assert hash_tree(git_repo) == first
        (git_repo / "app.py").write_text("VALUE = 2\n")
        assert hash_tree(git_repo) != first

    def test_ignored_dirs_excluded(self, git_repo):
        before = hash_tree(git_repo, ignore_dirs=[".ai-metrics"])
        (git_repo / ".ai-metrics").mkdir()
        (git_repo / ".ai-metrics" / "status.txt").write_text("running")
        assert hash_tree(git_repo, ignore_dirs=[".ai-metrics"]) == before

    def test_untracked_files_count(self, git_repo):
        before = hash_tree(git_repo)
        (git_repo / "new.py").write_text("x")
        assert hash_tree(git_repo) != before

    def test_plain_directory(self, tmp_path):
        plain = tmp_path / "plain"
        (plain / "bin").mkdir(parents=True)
        (plain / "a.txt").write_text("a")
        before = hash_tree(plain, ignore_dirs=["bin"])
        (plain / "bin" / "out.dll").write_text("binary")
        assert hash_tree(plain, ignore_dirs=["bin"]) == before


class TestBacklog:
    def test_complete(self, tmp_path):
        todo = tmp_path / "TODO.md"
        todo.write_text("- [x] one\n- [X] two\n")
        assert backlog_complete(todo)

    def test_open_items(self, tmp_path):
        todo = tmp_path / "TODO.md"
        todo.write_text("- [x] one\n- [ ] two\n")
        assert not backlog_complete(todo)

    def test_missing_or_empty(self, tmp_path):
        assert not backlog_complete(tmp_path / "TODO.md")
        (tmp_path / "TODO.md").write_text("# nothing yet\n")
        assert not backlog_complete(tmp_path / "TODO.md")


class SequenceHasher:
    def __init__(self, values):
        self.values = list(values)

    def __call__(self):
        return self.values.pop(0)


class TestConvergenceTracker:
    def test_five_identical_iterations_converge(self, tmp_path):
        tracker = ConvergenceTracker(tmp_path, threshold=5, hasher=lambda: "same")
        tracker.prime()
        for _ in range(4):
            tracker.observe()
            assert not tracker.converged
        tracker.observe()
        assert tracker.stagnant_count == 5
        assert tracker.converged

    def test_change_resets_count(self):
        tracker = ConvergenceTracker(".", threshold=3, hasher=SequenceHasher(["a", "a", "a", "b", "b"]))
        tracker.prime()
        assert tracker.observe() == 1
        assert tracker.observe() == 2
        assert tracker.observe() == 0
        assert tracker.observe() == 1

    def test_idle_counts_as_stagnant(self):
        tracker = ConvergenceTracker(".", threshold=2, hasher=SequenceHasher(["a", "b", "c"]))
        tracker.prime()
        tracker.observe(idle=True)
        tracker.observe(idle=True)
        assert tracker.converged

    def test_state_persisted(self, tmp_path):
        tracker = ConvergenceTracker(".", threshold=5, state_dir=tmp_path, hasher=lambda: "h")
        tracker.prime()
        tracker.observe()
        tracker.observe()
        restored = ConvergenceTracker(".", threshold=5, state_dir=tmp_path, hasher=lambda: "h")
        assert restored.stagnant_count == 2
        restored.prime()
        assert restored.observe() == 3

    def test_reset(self, tmp_path):
        tracker = ConvergenceTracker(".", threshold=1, state_dir=tmp_path, hasher=lambda: "h")
        tracker.prime()
        tracker.observe()
        tracker.reset()
        assert tracker.stagnant_count == 0
        assert not tracker.converged

    def test_real_repository(self, tmp_path):
        repo = tmp_path / "r"
        repo.mkdir()
        init_git_repo(repo, {"lib.py": "VALUE = 1\n"})
        tracker = ConvergenceTracker(repo, threshold=2)
        tracker.prime()
        tracker.observe()
        (repo / "lib.py").write_text("VALUE = 3\n")
        assert tracker.observe() == 0
