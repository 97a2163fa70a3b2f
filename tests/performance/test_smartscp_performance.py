"""
Performance tests for smartscp.

Time budgets for rule parsing, rule-chain resolution and tree walks. Every
test builds its own tree under tmp_path and needs no network.

Budgets are wall-clock and deliberately loose. A failure points at rule
files being re-read, a resolver whose cost grows with the square of the
depth, a glob that backtracks, or a walk that opens pruned directories.
"""

import pathlib
import sys
import time

import pytest
import psutil

sys.path.insert(0, str(pathlib.Path(__file__).parent.parent.parent))

from smartscp import (
    IgnoreResolver,
    RuleSetCache,
    WalkReport,
    _is_ignored,
    _match_rule,
    _parse_ignore_file,
    _segment_glob_to_regex,
    _segments_match,
    build_manifest,
    walk,
)
from tests.conftest import make_rule, write_tree


pytestmark = [pytest.mark.performance, pytest.mark.timeout(30)]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _timed(fn, *args, **kwargs):
    started = time.perf_counter()
    result = fn(*args, **kwargs)
    return time.perf_counter() - started, result


def _build_tree(base: pathlib.Path, n_dirs: int, files_per_dir: int, prefix: str = "dir"):
    for d in range(n_dirs):
        sub = base / f"{prefix}_{d:04d}"
        sub.mkdir(parents=True)
        for n in range(files_per_dir):
            (sub / f"file_{n:04d}.py").write_text("x")


def _manifest(root: pathlib.Path, cache=None):
    report = WalkReport(quiet=True)
    resolver = IgnoreResolver(root, cache=cache if cache is not None else RuleSetCache(), report=report)
    return build_manifest(root, resolver=resolver, report=report, quiet=True)


# ===========================================================================
# 1. Segment globs
# ===========================================================================

class TestSegmentGlobs:
    def test_cached_glob_lookup(self):
        glob = "*.cached_lookup_[[:digit:]]"
        _segment_glob_to_regex(glob)
        elapsed, _ = _timed(_segment_glob_to_regex, glob)
        assert elapsed < 0.001, f"cached lookup took {elapsed:.4f}s"

    def test_thousand_bracket_globs_compile(self):
        started = time.perf_counter()
        for i in range(1000):
            _segment_glob_to_regex(f"run_{i}_[[:alnum:]_-]*.[!o]ut")
        elapsed = time.perf_counter() - started
        assert elapsed < 1.0, f"took {elapsed:.3f}s"

    @pytest.mark.parametrize("pattern,path,expected,budget", [
        ("a/**", ["a"] + ["x"] * 60, True, 0.01),
        ("a/**/b", ["a"] + ["mid"] * 60 + ["b"], True, 0.05),
        ("x/**/y", ["a"] * 120, False, 0.05),
        ("**/**/**/**/**/z", ["x"] * 30, False, 0.1),
    ])
    def test_double_star_on_deep_paths(self, pattern, path, expected, budget):
        elapsed, result = _timed(_segments_match, make_rule(pattern).segments, path)
        assert result is expected
        assert elapsed < budget, f"{pattern} took {elapsed:.4f}s"


# ===========================================================================
# 2. Rule evaluation and the per-directory chain
# ===========================================================================

class TestRuleChain:
    def test_anchored_double_star_rule_over_many_paths(self):
        rule = make_rule("/**/cache/**")
        started = time.perf_counter()
        hits = sum(_match_rule(rule, f"svc/{i}/cache/blob_{i}", False) for i in range(2000))
        elapsed = time.perf_counter() - started
        assert hits == 2000
        assert elapsed < 0.5, f"took {elapsed:.3f}s"

    def test_long_rule_file_against_many_paths(self, tmp_path):
        p = tmp_path / "rules.gitignore"
        p.write_text("\n".join(f"gen_{i}/\n!gen_{i}/keep\n*.o{i}" for i in range(40)))
        rules = _parse_ignore_file(p)
        assert len(rules) == 120
        started = time.perf_counter()
        for i in range(5000):
            _is_ignored(f"pkg_{i}/src/mod_{i}.py", False, rules)
        elapsed = time.perf_counter() - started
        assert elapsed < 10.0, f"took {elapsed:.3f}s"

    def test_parse_large_rule_file(self, tmp_path):
        p = tmp_path / ".gitignore"
        p.write_text("\n".join(f"/area_{i}/**/*.tmp\\ " for i in range(10000)))
        elapsed, rules = _timed(_parse_ignore_file, p)
        assert len(rules) == 10000
        assert elapsed < 2.0, f"took {elapsed:.3f}s"

    def test_resolver_reuses_directory_decisions(self, tmp_path):
        write_tree(tmp_path, {".gitignore": "!/keep/\n", "keep/.scpignore": "*.bak\n"})
        resolver = IgnoreResolver(tmp_path, cache=RuleSetCache(), report=WalkReport(quiet=True))
        started = time.perf_counter()
        for i in range(5000):
            resolver.is_ignored(f"keep/a/b/c/file_{i}.bak", False)
        elapsed = time.perf_counter() - started
        assert resolver.cache.loads <= 5
        assert elapsed < 5.0, f"took {elapsed:.3f}s"


# ===========================================================================
# 3. Walking large trees
# ===========================================================================

class TestWalkPerformance:
    def test_1000_files_no_rules(self, tmp_path):
        src = tmp_path / "src"
        _build_tree(src, n_dirs=20, files_per_dir=50)
        elapsed, entries = _timed(_manifest, src)
        assert len(entries) == 1020
        assert elapsed < 3.0, f"1000-file manifest took {elapsed:.3f}s"

    def test_nested_rule_files_read_once_each(self, tmp_path):
        """Rule files are parsed once per directory, not once per entry."""
        src = tmp_path / "src"
        _build_tree(src, n_dirs=30, files_per_dir=40)
        (src / ".gitignore").write_text("*.log\n")
        for d in range(30):
            (src / f"dir_{d:04d}" / ".gitignore").write_text("*.tmp\n")
        cache = RuleSetCache()
        elapsed, entries = _timed(_manifest, src, cache)
        assert len(entries) == 30 + 30 * 40 + 31
        assert cache.loads == 31
        assert elapsed < 5.0, f"took {elapsed:.3f}s"

    def test_deep_rule_chain_resolves_quickly(self, tmp_path):
        """A rule file at each of 25 levels: every file consults the whole chain."""
        src = tmp_path / "src"
        level = src
        for depth in range(25):
            level = level / f"lvl{depth}"
            level.mkdir(parents=True)
            (level / ".gitignore").write_text(f"*.tmp\n!keep_{depth}.tmp\n")
            for f in range(20):
                (level / f"f{f}.tmp").write_text("x")
            (level / f"keep_{depth}.tmp").write_text("x")
        cache = RuleSetCache()
        elapsed, entries = _timed(_manifest, src, cache)
        kept = {e.rel_path.rsplit("/", 1)[-1] for e in entries}
        assert {f"keep_{d}.tmp" for d in range(25)} <= kept
        assert "f0.tmp" not in kept
        assert cache.loads == 26
        assert elapsed < 5.0, f"took {elapsed:.3f}s"

    def test_shared_cache_skips_reloading_rule_files(self, tmp_path):
        src = tmp_path / "src"
        _build_tree(src, n_dirs=50, files_per_dir=10)
        for d in range(50):
            (src / f"dir_{d:04d}" / ".scpignore").write_text("file_0000.py\n")
        cache = RuleSetCache()
        _manifest(src, cache)
        loads = cache.loads
        elapsed, entries = _timed(_manifest, src, cache)
        assert cache.loads == loads
        assert len(entries) == 50 + 50 * 9 + 50
        assert elapsed < 3.0, f"took {elapsed:.3f}s"

    def test_pruned_directory_costs_nothing(self, tmp_path):
        """A huge ignored directory must not be traversed at all."""
        src = tmp_path / "src"
        _build_tree(src, n_dirs=5, files_per_dir=10)
        _build_tree(src / "node_modules", n_dirs=100, files_per_dir=50, prefix="pkg")
        (src / ".gitignore").write_text("node_modules/\n")

        report = WalkReport(quiet=True)
        resolver = IgnoreResolver(src, cache=RuleSetCache(), report=report)
        queried = []
        original = resolver.is_ignored

        def spy(rel, is_dir):
            queried.append(rel)
            return original(rel, is_dir)

        resolver.is_ignored = spy
        elapsed, entries = _timed(lambda: list(walk(src, resolver=resolver, report=report)))
        assert len(entries) == 5 + 50 + 1
        assert len(queried) == len(entries) + 1
        assert elapsed < 2.0, f"pruned walk took {elapsed:.3f}s"


# ===========================================================================
# 4. Resources: no leaks, no file contents read
# ===========================================================================

class TestResourceUsage:
    def test_walk_does_not_leak_file_descriptors(self, tmp_path):
        src = tmp_path / "src"
        _build_tree(src, n_dirs=50, files_per_dir=5)
        proc = psutil.Process()
        before = proc.num_fds()
        for _ in range(5):
            _manifest(src)
        # An abandoned generator must release its directory handle too.
        gen = walk(src, report=WalkReport(quiet=True))
        next(gen)
        gen.close()
        assert proc.num_fds() <= before

    def test_manifest_does_not_load_file_contents(self, tmp_path):
        """RSS growth during a walk stays well under the data size."""
        src = tmp_path / "src"
        src.mkdir()
        total_bytes = 0
        for i in range(50):
            data = b"x" * (64 * 1024)
            (src / f"file_{i}.bin").write_bytes(data)
            total_bytes += len(data)

        proc = psutil.Process()
        rss_before = proc.memory_info().rss
        entries = _manifest(src)
        rss_delta = proc.memory_info().rss - rss_before

        assert len(entries) == 50
        assert rss_delta < total_bytes * 4, (
            f"RSS grew {rss_delta / 1024:.1f} KiB for {total_bytes / 1024:.1f} KiB of file data"
        )
