"""
Shared pytest fixtures and helpers for the SmartSCP test suite.
"""

import sys
import pathlib
import textwrap

import pytest

# Ensure the project root is importable regardless of how
# pytest is invoked so every test file can simply do
# ``import smartscp`` or ``from smartscp import ...``.
_PROJECT_ROOT = pathlib.Path(__file__).parent.parent
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

import smartscp  # noqa: E402 - imported after path fix
from smartscp import (  # noqa: E402
    IgnoreResolver,
    IgnoreRule,
    RuleSetCache,
    WalkReport,
    _parse_rule_line,
)


# ---------------------------------------------------------------------------
# Helper: build an IgnoreRule from a raw gitignore pattern string
# ---------------------------------------------------------------------------

def make_rule(pattern_str: str, source_dir: str = "") -> IgnoreRule:
    """Parse one gitignore pattern line into an IgnoreRule.

    Raises ValueError for blank/comment lines so tests can construct
    rules inline without writing temporary files.
    """
    rule = _parse_rule_line(pattern_str, source_dir=source_dir)
    if rule is None:
        raise ValueError("Pattern is blank or a comment")
    return rule


def write_tree(base: pathlib.Path, tree: dict) -> pathlib.Path:
    """Create files (str content) and directories (None) under base."""
    base.mkdir(parents=True, exist_ok=True)
    for rel, content in tree.items():
        p = base / rel
        if content is None:
            p.mkdir(parents=True, exist_ok=True)
        else:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(content, encoding="utf-8")
    return base


def manifest_paths(root: pathlib.Path, **resolver_kwargs) -> list:
    """Walk root with a fresh cache and quiet report; return relative paths."""
    report = WalkReport(quiet=True)
    resolver = IgnoreResolver(root, cache=RuleSetCache(), report=report, **resolver_kwargs)
    return [e.rel_path for e in smartscp.walk(root, resolver=resolver, report=report)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def quiet_report():
    return WalkReport(quiet=True)


@pytest.fixture
def ignore_file_factory(tmp_path):
    """Factory that writes a .gitignore-style file and returns its Path."""
    def _factory(content: str, filename: str = ".testignore") -> pathlib.Path:
        p = tmp_path / filename
        p.write_text(textwrap.dedent(content), encoding="utf-8")
        return p
    return _factory


@pytest.fixture
def fake_home(tmp_path, monkeypatch):
    """Point HOME at a temporary directory for endpoint inference tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home


@pytest.fixture
def source_tree(tmp_path):
    """Build a representative project tree with nested ignore files."""
    base = tmp_path / "project"
    write_tree(base, {
        ".gitignore": "*.log\nnode_modules/\n__pycache__/\n/dist\n.env\n",
        "src/main.py": "print('hello')",
        "src/util.py": "pass",
        "src/.gitignore": "generated/\n!important.log\n",
        "src/generated/out.py": "x",
        "src/important.log": "keep me",
        "src/noise.log": "drop me",
        "tests/test_main.py": "def test(): pass",
        "dist/output.bin": "\x00" * 16,
        "node_modules/dep.js": "module.exports={}",
        "__pycache__/main.cpython-311.pyc": "\x00" * 8,
        ".env": "SECRET=abc",
        ".env.example": "SECRET=change_me",
        "README.md": "# project",
        "deep/nested/file.txt": "content",
        "debug.log": "log data",
    })
    return base
