#!/usr/bin/env python3
"""
MIT No Attribution License (MIT-0)

Copyright (c) 2026 Scott Morrison

Permission is hereby granted, free of charge, to any person obtaining a copy of this
software and associated documentation files (the "Software"), to deal in the Software
without restriction, including without limitation the rights to use, copy, modify,
merge, publish, distribute, sublicense, and/or sell copies of the Software, and to
permit persons to whom the Software is furnished to do so.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION OF
CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR
THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

from __future__ import annotations

import enum
import functools
import os
import posixpath
import random
import re
import shlex
import stat
import subprocess
import sys
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, Iterator, Union

VERSION = "SmartSCP/1.0.0"

# Per-directory rule files, read in this order (later files take precedence).
IGNORE_FILE_NAMES = (".gitignore", ".scpignore")

# Non-fatal warning kinds recorded in a WalkReport.
RULE_FILE_UNREADABLE = "RuleFileUnreadable"
MALFORMED_PATTERN = "MalformedPattern"
DIRECTORY_UNREADABLE = "DirectoryUnreadable"
SYMLINK_CYCLE_DETECTED = "SymlinkCycleDetected"
UNCLASSIFIABLE_ENTRY = "UnclassifiableEntry"


class SmartscpError(RuntimeError):
    """Base class for errors raised by the path-resolution core."""


class InvalidArguments(SmartscpError):
    """The endpoint pair is ambiguous or malformed."""


class LocalPathNotFound(InvalidArguments):
    """The local side of an upload does not exist."""


class MalformedPattern(SmartscpError):
    """An ignore pattern could not be compiled."""


class FilesystemFatal(SmartscpError):
    """The walk lost its root; no manifest built so far is valid."""


class UsageError(SmartscpError):
    """A command-line option is unknown, malformed or out of range."""


class Direction(enum.Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class EntryKind(enum.Enum):
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class IgnoreRule:
    """Represents one parsed ignore rule from a gitignore-style file.

    ``source_dir`` is the slash-delimited directory of the rule file relative
    to the resolver base ("" for the base itself); the rule only sees paths
    beneath it, expressed relative to it.
    """

    pattern: str
    segments: tuple[str, ...]
    negated: bool
    anchored: bool
    has_slash: bool
    dir_only: bool
    source_dir: str = ""


@dataclass(frozen=True)
class RuleSet:
    directory: str
    rules: tuple[IgnoreRule, ...] = ()


@dataclass(frozen=True)
class Local:
    path: Path


@dataclass(frozen=True)
class Remote:
    host: str
    path: str


@dataclass(frozen=True)
class TransferSpec:
    """One local and one remote endpoint plus the direction between them."""

    direction: Direction
    local: Local
    remote: Remote
    remote_path_inferred: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.direction, Direction):
            raise InvalidArguments(f"invalid transfer direction: {self.direction!r}")
        if not isinstance(self.local, Local) or not isinstance(self.remote, Remote):
            raise InvalidArguments("a transfer needs exactly one local and one remote endpoint")

    @property
    def source(self) -> Local | Remote:
        return self.local if self.direction is Direction.UPLOAD else self.remote

    @property
    def target(self) -> Local | Remote:
        return self.remote if self.direction is Direction.UPLOAD else self.local


@dataclass(frozen=True)
class ManifestEntry:
    rel_path: str
    kind: EntryKind
    mode: int | None = None


@dataclass(frozen=True)
class MakeDirectory:
    rel_path: str
    destination: str


@dataclass(frozen=True)
class CopyFile:
    rel_path: str
    source: str
    destination: str
    mode: int | None = None


TransferOperation = Union[MakeDirectory, CopyFile]


@dataclass(frozen=True)
class WalkWarning:
    kind: str
    path: str
    message: str


@dataclass
class SmartscpOptions:
    ignore_file: str | None = None
    cpu_count: int | None = None
    retry_limit: int = 3
    fail_cancel_threshold: int = 5
    show_version: bool = False
    dry_run: bool = False


def _usage_text() -> str:
    """Return CLI help text shared by --help and argument error paths."""

    return (
        "usage: smartscp [scp options] [smartscp options] local_path host[:remote_path]\n"
        "       smartscp [scp options] [smartscp options] host:remote_path local_path\n\n"
        "scp options passed through:\n"
        "  -3 -4 -6 -A -B -C -O -p -q -R -r -s -T -v\n"
        "  -c cipher  -D sftp_server_path  -F ssh_config  -i identity_file\n"
        "  -J destination  -l limit  -o ssh_option  -P port  -S program  -X sftp_option\n\n"
        "smartscp options:\n"
        "  -Z, --ignore-file FILE        extra gitignore-style rules applied to the upload root\n"
        "  -Y, --cpu-count N             number of parallel copy workers\n"
        "      --retry-limit N           attempts per file (default: 3)\n"
        "      --fail-cancel-threshold N stop after N failures with no success (default: 5)\n"
        "      --dry-run                 print the transfer plan and exit\n"
        "  -V, --version                 show smartscp version and exit\n\n"
        "Directories are always copied recursively. Uploads skip whatever the\n"
        ".gitignore and .scpignore files at each level exclude. Without a remote\n"
        "path the local path is mirrored under the remote home directory. -l is\n"
        "shared out across the copy workers.\n"
    )


def _status(msg: str, quiet: bool = False) -> None:
    """Emit a namespaced status line unless quiet mode is active."""

    if not quiet:
        print(f"[smartscp] {msg}", flush=True)


def _warn(msg: str) -> None:
    print(f"[smartscp] warning: {msg}", file=sys.stderr, flush=True)


class WalkReport:
    """Collects non-fatal problems found while resolving rules and walking."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet
        self.warnings: list[WalkWarning] = []
        self._lock = threading.Lock()

    def add(self, kind: str, path: str | Path, message: str) -> None:
        warning = WalkWarning(kind=kind, path=str(path), message=message)
        with self._lock:
            self.warnings.append(warning)
        if not self.quiet:
            _warn(f"{kind}: {warning.path}: {message}")

    def count(self, kind: str) -> int:
        with self._lock:
            return sum(1 for w in self.warnings if w.kind == kind)

    def __len__(self) -> int:
        return len(self.warnings)


# ---------------------------------------------------------------------------
# Ignore rule parsing and matching
# ---------------------------------------------------------------------------


def _normalize_rel(path: Path) -> str:
    """Slash-delimited form of a relative path, without '.' parts or edge slashes."""

    return "/".join(part for part in path.as_posix().split("/") if part not in ("", "."))


# A backslash escape pair, or any single character.
_PATTERN_TOKEN = re.compile(r"\\.|.", re.DOTALL)

_POSIX_CLASSES = {
    "alnum": "a-zA-Z0-9",
    "alpha": "a-zA-Z",
    "blank": " \\t",
    "cntrl": "\\x00-\\x1f\\x7f",
    "digit": "0-9",
    "graph": "\\x21-\\x7e",
    "lower": "a-z",
    "print": "\\x20-\\x7e",
    "punct": "!-/:-@\\[-`{-~",
    "space": " \\t\\n\\r\\f\\v",
    "upper": "A-Z",
    "xdigit": "0-9A-Fa-f",
}


def _posix_class(tokens: list[str], start: int, seg_pat: str) -> tuple[str | None, int]:
    """Expand a ``[:name:]`` starting at ``tokens[start]``; (None, start) if there is none."""

    for end in range(start + 2, len(tokens) - 1):
        if tokens[end] == ":" and tokens[end + 1] == "]":
            name = "".join(tokens[start + 2 : end])
            if name not in _POSIX_CLASSES:
                raise MalformedPattern(f"unknown character class [:{name}:] in {seg_pat!r}")
            return _POSIX_CLASSES[name], end + 2
    return None, start


def _bracket_to_regex(tokens: list[str], start: int, seg_pat: str) -> tuple[str, int]:
    """Translate the bracket expression opening at ``tokens[start]``.

    Returns the regex character class and the index just past the closing
    bracket. A ']' straight after the opening (or after '!'/'^') is literal.
    """

    i = start + 1
    negate = i < len(tokens) and tokens[i] in ("!", "^")
    if negate:
        i += 1
    items: list[str] = []
    while i < len(tokens):
        tok = tokens[i]
        if tok == "]" and items:
            return "[" + ("^" if negate else "") + "".join(items) + "]", i + 1
        if tok == "[" and i + 1 < len(tokens) and tokens[i + 1] == ":":
            expanded, after = _posix_class(tokens, i, seg_pat)
            if expanded is not None:
                items.append(expanded)
                i = after
                continue
        if tok == "-" and items and i + 1 < len(tokens) and tokens[i + 1] != "]":
            items.append("-")
        else:
            items.append(re.escape(tok[-1]))
        i += 1
    raise MalformedPattern(f"unterminated character class in {seg_pat!r}")


@functools.lru_cache(maxsize=4096)
def _segment_glob_to_regex(seg_pat: str) -> re.Pattern[str]:
    """Compile one path-segment glob; use the result with ``fullmatch``.

    Handles ``*``, ``?``, backslash escapes and bracket expressions, POSIX
    classes such as ``[[:digit:]]`` included. Raises MalformedPattern for an
    unterminated bracket expression, an unknown class or a dangling escape.
    """

    tokens = _PATTERN_TOKEN.findall(seg_pat)
    out: list[str] = []
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok == "\\":
            raise MalformedPattern(f"dangling escape in {seg_pat!r}")
        if tok == "[":
            regex, i = _bracket_to_regex(tokens, i, seg_pat)
            out.append(regex)
            continue
        if tok == "*":
            # Runs of '*' inside a segment act as one.
            if not out or out[-1] != "[^/]*":
                out.append("[^/]*")
        elif tok == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(tok[-1]))
        i += 1
    try:
        return re.compile("".join(out))
    except re.error as e:
        raise MalformedPattern(f"cannot compile {seg_pat!r}: {e}") from None


def _segments_match(pattern_segments: tuple[str, ...], path_segments: list[str]) -> bool:
    """Match path segments against pattern segments, '**' spanning any number.

    Tracks the set of positions in ``path_segments`` the pattern can have
    reached so far. A trailing '**' needs at least one segment left, so
    'a/**' matches everything inside 'a' but not 'a' itself.
    """

    n = len(path_segments)
    reached = {0}
    last = len(pattern_segments) - 1
    for pi, pat in enumerate(pattern_segments):
        if not reached:
            return False
        if pat == "**":
            lowest = min(reached)
            if pi == last:
                return lowest < n
            reached = set(range(lowest, n + 1))
            continue
        regex = _segment_glob_to_regex(pat)
        reached = {i + 1 for i in reached if i < n and regex.fullmatch(path_segments[i])}
    return n in reached


def _parse_rule_line(raw: str, source_dir: str = "") -> IgnoreRule | None:
    """Parse one rule-file line; None for blanks and comments."""

    tokens = _PATTERN_TOKEN.findall(raw.rstrip("\r\n"))
    # Unescaped trailing spaces are not part of the pattern.
    while tokens and tokens[-1] == " ":
        tokens.pop()
    if not tokens or tokens[0] == "#":
        return None
    negated = tokens[0] == "!"
    if negated:
        tokens = tokens[1:]
    rooted = bool(tokens) and tokens[0] == "/"
    if rooted:
        tokens = tokens[1:]
    dir_only = bool(tokens) and tokens[-1] == "/"
    if dir_only:
        tokens = tokens[:-1]
    if not tokens:
        raise MalformedPattern(f"pattern {raw.strip()!r} is empty")

    segments: list[str] = []
    current: list[str] = []
    for tok in [*tokens, "/"]:
        if tok != "/":
            current.append(tok)
        elif current:
            segments.append("".join(current))
            current = []
    if not segments:
        raise MalformedPattern(f"pattern {raw.strip()!r} has no path segments")
    for seg in segments:
        if seg != "**":
            _segment_glob_to_regex(seg)
    has_slash = len(segments) > 1
    return IgnoreRule(
        pattern="/".join(segments),
        segments=tuple(segments),
        negated=negated,
        anchored=rooted or has_slash,
        has_slash=has_slash,
        dir_only=dir_only,
        source_dir=source_dir,
    )


def _parse_ignore_file(path: Path, source_dir: str = "", report: WalkReport | None = None) -> list[IgnoreRule]:
    """Parse a gitignore-like file into ordered matching rules."""

    rules: list[IgnoreRule] = []
    try:
        lines = path.read_text(encoding="utf-8-sig", errors="replace").splitlines()
    except OSError as e:
        raise RuntimeError(f"Failed to read ignore file {path}: {e}") from e

    for lineno, raw in enumerate(lines, start=1):
        try:
            rule = _parse_rule_line(raw, source_dir=source_dir)
        except MalformedPattern as e:
            if report is not None:
                report.add(MALFORMED_PATTERN, f"{path}:{lineno}", str(e))
            else:
                _warn(f"{MALFORMED_PATTERN}: {path}:{lineno}: {e}")
            continue
        if rule is not None:
            rules.append(rule)
    return rules


def parse_rule_set(
    directory: Path,
    *,
    source_dir: str = "",
    report: WalkReport | None = None,
    names: Iterable[str] = IGNORE_FILE_NAMES,
) -> RuleSet:
    """Read every rule file present in ``directory`` into one RuleSet.

    A missing rule file is normal. An unreadable one is reported and
    contributes no rules.
    """

    rules: list[IgnoreRule] = []
    for name in names:
        candidate = directory / name
        if not os.path.lexists(candidate):
            continue
        try:
            rules.extend(_parse_ignore_file(candidate, source_dir=source_dir, report=report))
        except RuntimeError as e:
            if report is not None:
                report.add(RULE_FILE_UNREADABLE, candidate, str(e))
            else:
                _warn(f"{RULE_FILE_UNREADABLE}: {candidate}: {e}")
    return RuleSet(directory=source_dir, rules=tuple(rules))


def _relative_to_dir(rel: str, directory: str) -> str | None:
    if not directory:
        return rel
    if rel.startswith(directory + "/"):
        return rel[len(directory) + 1 :]
    return None


def _match_rule(rule: IgnoreRule, rel: str, is_dir: bool) -> bool:
    """Return True when a single ignore rule matches the given relative path.

    ``rel`` is relative to the rule's own directory. Unanchored rules look at
    the last segment only; ancestors are the resolver's job.
    """

    rel = rel.strip("/")
    if not rel:
        return False
    if rule.dir_only and not is_dir:
        return False
    parts = rel.split("/")
    if not rule.anchored:
        return bool(_segment_glob_to_regex(rule.segments[0]).fullmatch(parts[-1]))
    return _segments_match(rule.segments, parts)


def _is_ignored(rel: str, is_dir: bool, rules: Iterable[IgnoreRule]) -> bool:
    """Apply rules in order and return the final ignore decision."""

    ignored = False
    for rule in rules:
        scoped = _relative_to_dir(rel, rule.source_dir)
        if scoped is None:
            continue
        if _match_rule(rule, scoped, is_dir):
            ignored = not rule.negated
    return ignored


# ---------------------------------------------------------------------------
# Hierarchical resolution
# ---------------------------------------------------------------------------


class RuleSetCache:
    """Invocation-scoped cache of parsed rule sets, keyed by directory.

    Each key is written once; concurrent loaders of the same directory race
    and the first stored RuleSet wins.
    """

    def __init__(self) -> None:
        self._sets: dict[str, RuleSet] = {}
        self._lock = threading.Lock()
        self.loads = 0

    def get(self, key: str, loader: Callable[[], RuleSet]) -> RuleSet:
        with self._lock:
            found = self._sets.get(key)
        if found is not None:
            return found
        loaded = loader()
        with self._lock:
            stored = self._sets.setdefault(key, loaded)
            if stored is loaded:
                self.loads += 1
        return stored

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._sets

    def __len__(self) -> int:
        with self._lock:
            return len(self._sets)


def find_vcs_root(path: Path) -> Path | None:
    """Return the nearest directory at or above ``path`` holding a .git entry."""

    path = Path(os.path.abspath(path))
    for candidate in (path, *path.parents):
        if os.path.lexists(candidate / ".git"):
            return candidate
    return None


class IgnoreResolver:
    """Decides whether a path under ``root`` is excluded from transfer.

    Rule sets are consulted from the resolver base (the enclosing git
    working tree, or ``root``) down to the entry's parent directory. Within
    that chain the last matching rule wins.
    """

    def __init__(
        self,
        root: Path,
        *,
        cache: RuleSetCache | None = None,
        report: WalkReport | None = None,
        extra_rules: Iterable[IgnoreRule] = (),
        use_vcs_root: bool = True,
        names: Iterable[str] = IGNORE_FILE_NAMES,
    ) -> None:
        self.root = Path(os.path.abspath(root))
        self.cache = cache if cache is not None else RuleSetCache()
        self.report = report if report is not None else WalkReport()
        self.names = tuple(names)
        vcs_root = find_vcs_root(self.root) if use_vcs_root else None
        self.base = vcs_root if vcs_root is not None else self.root
        self.root_prefix = _normalize_rel(self.root.relative_to(self.base))
        self.ignored_count = 0
        self._dir_decisions: dict[str, bool] = {}

        global_rules = [replace(rule, source_dir=self.root_prefix) for rule in extra_rules]
        if vcs_root is not None:
            global_rules.extend(self._load_info_exclude())
        self._global_rules = tuple(global_rules)

    def _load_info_exclude(self) -> list[IgnoreRule]:
        exclude = self.base / ".git" / "info" / "exclude"
        if not exclude.is_file():
            return []
        try:
            return _parse_ignore_file(exclude, source_dir="", report=self.report)
        except RuntimeError as e:
            self.report.add(RULE_FILE_UNREADABLE, exclude, str(e))
            return []

    def _full(self, rel: str) -> str:
        if not self.root_prefix:
            return rel
        return f"{self.root_prefix}/{rel}" if rel else self.root_prefix

    def rule_set(self, base_rel_dir: str) -> RuleSet:
        """Return the cached RuleSet for a directory relative to the base."""

        directory = self.base / base_rel_dir if base_rel_dir else self.base
        return self.cache.get(
            str(directory),
            lambda: parse_rule_set(directory, source_dir=base_rel_dir, report=self.report, names=self.names),
        )

    def _chain(self, full_rel: str) -> list[IgnoreRule]:
        rules = list(self._global_rules)
        parts = full_rel.split("/")[:-1]
        rules.extend(self.rule_set("").rules)
        for end in range(1, len(parts) + 1):
            rules.extend(self.rule_set("/".join(parts[:end])).rules)
        return rules

    def decide(self, rel: str, is_dir: bool) -> bool:
        """Evaluate the entry itself, without looking at its ancestors."""

        full = self._full(rel)
        return _is_ignored(full, is_dir, self._chain(full))

    def _directory_ignored(self, rel: str) -> bool:
        found = self._dir_decisions.get(rel)
        if found is None:
            found = self.decide(rel, True)
            self._dir_decisions[rel] = found
        return found

    def is_ignored(self, rel: str, is_dir: bool) -> bool:
        """Return True when ``rel`` (relative to root) must not be transferred.

        Any ignored ancestor inside root excludes the entry too.
        """

        rel = rel.strip("/")
        if not rel:
            return False
        parts = rel.split("/")
        for end in range(1, len(parts)):
            if self._directory_ignored("/".join(parts[:end])):
                self.ignored_count += 1
                return True
        ignored = self._directory_ignored(rel) if is_dir else self.decide(rel, False)
        if ignored:
            self.ignored_count += 1
        return ignored


# ---------------------------------------------------------------------------
# Tree walk
# ---------------------------------------------------------------------------


def walk(
    root: Path,
    resolver: IgnoreResolver | None = None,
    report: WalkReport | None = None,
) -> Iterator[ManifestEntry]:
    """Yield manifest entries for ``root`` in depth-first pre-order.

    A file root yields a single entry with an empty relative path. For a
    directory root, each directory's files come before its subdirectories
    and every directory precedes its contents. Ignored directories are
    pruned before they are opened.
    """

    root = Path(os.path.abspath(Path(root).expanduser()))
    if report is None:
        report = resolver.report if resolver is not None else WalkReport()
    try:
        root_stat = root.stat()
    except OSError as e:
        raise FilesystemFatal(f"cannot read transfer root {root}: {e}") from e

    if not stat.S_ISDIR(root_stat.st_mode):
        yield ManifestEntry("", EntryKind.FILE, stat.S_IMODE(root_stat.st_mode))
        return

    if resolver is None:
        resolver = IgnoreResolver(root, report=report)

    # Each pending directory carries the identities of itself and its ancestors.
    root_ident = (root_stat.st_dev, root_stat.st_ino)
    pending: list[tuple[Path, str, int | None, frozenset]] = [(root, "", None, frozenset({root_ident}))]
    while pending:
        dir_path, rel_dir, dir_mode, ancestors = pending.pop()
        if rel_dir:
            yield ManifestEntry(rel_dir, EntryKind.DIRECTORY, dir_mode)
        try:
            with os.scandir(dir_path) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as e:
            if not rel_dir or not os.path.isdir(root):
                raise FilesystemFatal(f"transfer root {root} became unreadable: {e}") from e
            report.add(DIRECTORY_UNREADABLE, rel_dir, f"{e}; skipping subtree")
            continue

        subdirs: list[tuple[Path, str, int | None, frozenset]] = []
        for child in children:
            rel = f"{rel_dir}/{child.name}" if rel_dir else child.name
            try:
                is_dir = child.is_dir()
                st = child.stat()
            except OSError as e:
                if not os.path.isdir(root):
                    raise FilesystemFatal(f"transfer root {root} became unreadable: {e}") from e
                # Unclassifiable entries are judged as files, like everything else.
                if resolver.is_ignored(rel, False):
                    continue
                report.add(UNCLASSIFIABLE_ENTRY, rel, f"{e}; including as file")
                yield ManifestEntry(rel, EntryKind.FILE)
                continue

            if is_dir:
                if resolver.is_ignored(rel, True):
                    continue
                ident = (st.st_dev, st.st_ino)
                if ident in ancestors:
                    report.add(SYMLINK_CYCLE_DETECTED, rel, "link leads back to an enclosing directory; not following")
                    continue
                subdirs.append((Path(child.path), rel, stat.S_IMODE(st.st_mode), ancestors | {ident}))
                continue

            if resolver.is_ignored(rel, False):
                continue
            yield ManifestEntry(rel, EntryKind.FILE, stat.S_IMODE(st.st_mode))

        pending.extend(reversed(subdirs))


def build_manifest(
    root: Path,
    resolver: IgnoreResolver | None = None,
    report: WalkReport | None = None,
    quiet: bool = False,
) -> list[ManifestEntry]:
    """Materialize a walk into a manifest list and log a summary line."""

    if report is None:
        report = resolver.report if resolver is not None else WalkReport(quiet=quiet)
    entries = list(walk(root, resolver=resolver, report=report))
    files = sum(1 for e in entries if e.kind is EntryKind.FILE)
    dirs = len(entries) - files
    ignored = resolver.ignored_count if resolver is not None else 0
    _status(
        f"manifest complete: transfer files={files}, dirs={dirs}, ignored={ignored}, warnings={len(report)}",
        quiet=quiet,
    )
    return entries


# ---------------------------------------------------------------------------
# Endpoint parsing
# ---------------------------------------------------------------------------

_HOST_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.@%\-]*$")

# host:path, where the host part holds no slash.
_REMOTE_OPERAND_RE = re.compile(r"^(?P<host>[^/:]+):(?P<path>.*)$", re.DOTALL)


def _is_remote_spec(spec: str) -> bool:
    """Heuristic check for host:path or scp:// style remote operands."""

    if spec.startswith("scp://"):
        return True
    m = _REMOTE_OPERAND_RE.match(spec)
    if m is None:
        return False
    # C:/... is a drive letter, not a host.
    host = m.group("host")
    return not (len(host) == 1 and host.isalpha())


def _split_remote_spec(spec: str) -> tuple[str, str]:
    """Split a host:path operand into host and remote path parts."""

    if spec.startswith("scp://"):
        raise InvalidArguments(f"scp:// operands are not supported: {spec}")
    m = _REMOTE_OPERAND_RE.match(spec)
    if m is None:
        raise InvalidArguments(f"Invalid remote operand: {spec}")
    host = m.group("host")
    # ssh would read a leading dash as an option.
    if host.startswith("-"):
        raise InvalidArguments(f"Invalid remote host: {host}")
    return host, m.group("path")


def _looks_like_host(arg: str) -> bool:
    return bool(_HOST_RE.match(arg))


def _expand_local(arg: str) -> Path:
    return Path(os.path.abspath(os.path.expanduser(arg)))


def _join_remote_path(base: str, subpath: str) -> str:
    return posixpath.join(base, subpath.lstrip("/"))


def _infer_remote_path(local: Path, home: Path) -> str:
    """Mirror a local path into the remote home directory.

    ~/.local/share maps to ~/.local/share; a path outside the local home
    keeps only its basename.
    """

    try:
        rel = _normalize_rel(local.relative_to(home))
    except ValueError:
        _warn(f"{local} is outside {home}; placing it at ~/{local.name} on the remote side")
        rel = local.name
    return _join_remote_path("~", rel) if rel else "~"


def parse_endpoints(arg1: str, arg2: str, *, home: Path | str | None = None) -> TransferSpec:
    """Turn the two positional operands into a TransferSpec.

    Exactly one operand must be remote (``host:path``). When neither looks
    remote, a bare host-like second operand that does not exist locally is
    taken as the upload host with an omitted remote path.
    """

    if not arg1 or not arg2:
        raise InvalidArguments("expected two non-empty operands")
    remote1 = _is_remote_spec(arg1)
    remote2 = _is_remote_spec(arg2)

    if remote1 and remote2:
        raise InvalidArguments(f"both operands look remote, cannot infer direction: {arg1!r} {arg2!r}")
    if remote1:
        direction = Direction.DOWNLOAD
        host, remote_path = _split_remote_spec(arg1)
        local_arg = arg2
    elif remote2:
        direction = Direction.UPLOAD
        host, remote_path = _split_remote_spec(arg2)
        local_arg = arg1
    elif _looks_like_host(arg2) and not os.path.lexists(os.path.expanduser(arg2)):
        direction = Direction.UPLOAD
        host, remote_path = arg2, ""
        local_arg = arg1
    else:
        raise InvalidArguments(f"neither operand names a remote host: {arg1!r} {arg2!r}")

    local_path = _expand_local(local_arg)
    if direction is Direction.UPLOAD and not os.path.lexists(local_path):
        raise LocalPathNotFound(f"Local path not found: {local_arg}")

    inferred = not remote_path
    if inferred:
        home_path = _expand_local(str(home)) if home is not None else _expand_local("~")
        remote_path = _infer_remote_path(local_path, home_path)

    return TransferSpec(
        direction=direction,
        local=Local(local_path),
        remote=Remote(host=host, path=remote_path),
        remote_path_inferred=inferred,
    )


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def _looks_like_remote_dir(path: str) -> bool:
    return path in {"", ".", "~"} or path.endswith("/")


def _destination_root(spec: TransferSpec, target_is_dir: bool | None = None) -> str:
    """Where the transfer root lands on the target side.

    As with scp, a root copied into an existing directory keeps its own name
    inside it; otherwise the target path itself becomes the copy. An
    inferred remote path is always the copy. ``target_is_dir`` of None
    falls back to what can be told without a round-trip.
    """

    if spec.direction is Direction.UPLOAD:
        remote = spec.remote.path
        if spec.remote_path_inferred:
            return remote
        if target_is_dir is None:
            target_is_dir = _looks_like_remote_dir(remote)
        return _join_remote_path(remote, spec.local.path.name) if target_is_dir else remote

    local = spec.local.path
    if target_is_dir is None:
        target_is_dir = local.is_dir()
    name = posixpath.basename(spec.remote.path.rstrip("/"))
    if target_is_dir and name not in {"", ".", "~"}:
        return str(local / name)
    return str(local)


def _join_side(root: str, rel: str, remote: bool) -> str:
    if not rel:
        return root
    if remote:
        return _join_remote_path(root, rel)
    return str(Path(root) / rel)


def plan(
    manifest: Iterable[ManifestEntry],
    spec: TransferSpec,
    *,
    target_is_dir: bool | None = None,
) -> list[TransferOperation]:
    """Project a manifest into ordered mkdir/copy operations.

    Manifest order is kept, so directories precede their contents. Each
    directory is planned once. ``target_is_dir`` says whether the target
    path already exists as a directory (see ``_destination_root``).
    """

    entries = list(manifest)
    single_file = any(e.rel_path == "" and e.kind is EntryKind.FILE for e in entries)
    dest_root = _destination_root(spec, target_is_dir)
    upload = spec.direction is Direction.UPLOAD
    src_root = str(spec.local.path) if upload else spec.remote.path

    ops: list[TransferOperation] = []
    planned_dirs: set[str] = set()
    if not single_file:
        ops.append(MakeDirectory(rel_path="", destination=dest_root))
        planned_dirs.add("")

    for entry in entries:
        dest = _join_side(dest_root, entry.rel_path, remote=upload)
        if entry.kind is EntryKind.DIRECTORY:
            if entry.rel_path in planned_dirs:
                continue
            planned_dirs.add(entry.rel_path)
            ops.append(MakeDirectory(rel_path=entry.rel_path, destination=dest))
            continue
        src = _join_side(src_root, entry.rel_path, remote=not upload)
        ops.append(CopyFile(rel_path=entry.rel_path, source=src, destination=dest, mode=entry.mode))
    return ops


def _describe_operation(op: TransferOperation, spec: TransferSpec) -> str:
    host = spec.remote.host
    if isinstance(op, MakeDirectory):
        where = f"{host}:{op.destination}" if spec.direction is Direction.UPLOAD else op.destination
        return f"mkdir {where}"
    if spec.direction is Direction.UPLOAD:
        return f"copy  {op.source} -> {host}:{op.destination}"
    return f"copy  {host}:{op.source} -> {op.destination}"


# ---------------------------------------------------------------------------
# ssh helpers and the remote lister
# ---------------------------------------------------------------------------


def _scp_remote_path(path: str) -> str:
    """scp resolves relative remote paths against the login home."""

    if path == "~":
        return "."
    if path.startswith("~/"):
        return path[2:] or "."
    return path


def _quote_remote_path(path: str) -> str:
    """Quote a remote path for a POSIX shell, keeping ~/ as $HOME."""

    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        rest = path[2:]
        # Quote for double-quoted shell context.
        rest = rest.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")
        return f'"$HOME/{rest}"'
    return shlex.quote(path)


def _run_ssh(host: str, ssh_args: Iterable[str], script: str) -> subprocess.CompletedProcess:
    return subprocess.run(["ssh", *ssh_args, host, script], stdout=subprocess.PIPE, stderr=subprocess.PIPE)


def _stderr_tail(stderr: bytes | str | None, keep: int = 3) -> str:
    """The last few non-blank stderr lines, formatted as an error suffix."""

    if not stderr:
        return ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
    return f": {' | '.join(lines[-keep:])}" if lines else ""


def _remote_listing_command(remote_path: str) -> str:
    quoted = _quote_remote_path(remote_path)
    return (
        f"p={quoted}; "
        'case "$p" in /*) ;; *) p="./$p" ;; esac; '
        "if [ -d \"$p\" ]; then cd -- \"$p\" && find . -mindepth 1 -printf '%y\\t%m\\t%P\\0'; "
        "elif [ -e \"$p\" ]; then find \"$p\" -maxdepth 0 -printf 'f\\t%m\\t\\0'; "
        "else echo \"no such remote path: $p\" >&2; exit 3; fi"
    )


def _parse_remote_listing(text: str) -> list[ManifestEntry]:
    """Parse NUL-separated ``<type>\\t<octal mode>\\t<relpath>`` records.

    Records that name a parent directory are dropped. The result is sorted
    by path segments so every directory precedes its contents.
    """

    entries: dict[str, ManifestEntry] = {}
    for record in filter(None, text.split("\0")):
        fields = record.split("\t", 2)
        if len(fields) != 3:
            continue
        kind_s, mode_s, rel = fields
        rel = rel.strip("/")
        if ".." in rel.split("/"):
            continue
        kind = EntryKind.DIRECTORY if kind_s == "d" else EntryKind.FILE
        if kind is EntryKind.DIRECTORY and not rel:
            continue
        try:
            mode: int | None = int(mode_s, 8)
        except ValueError:
            mode = None
        entries[rel] = ManifestEntry(rel, kind, mode)
    return sorted(entries.values(), key=lambda e: e.rel_path.split("/"))


def list_remote_tree(host: str, remote_path: str, *, ssh_args: list[str], quiet: bool = False) -> list[ManifestEntry]:
    """Enumerate a remote path over ssh, parents before children."""

    _status(f"listing remote tree {host}:{remote_path}", quiet=quiet)
    p = _run_ssh(host, ssh_args, _remote_listing_command(remote_path))
    if p.returncode != 0:
        raise RuntimeError(f"remote listing failed with exit code {p.returncode}{_stderr_tail(p.stderr)}")
    entries = _parse_remote_listing(p.stdout.decode("utf-8", errors="surrogateescape"))
    _status(f"remote listing complete: entries={len(entries)}", quiet=quiet)
    return entries


def remote_is_directory(host: str, remote_path: str, *, ssh_args: list[str]) -> bool:
    """Return True when ``remote_path`` already exists on ``host`` as a directory."""

    p = _run_ssh(host, ssh_args, f"test -d {_quote_remote_path(remote_path)}")
    if p.returncode in (0, 1):
        return p.returncode == 0
    raise RuntimeError(f"remote directory check failed with exit code {p.returncode}{_stderr_tail(p.stderr)}")


def _target_is_directory(spec: TransferSpec, ssh_args: list[str]) -> bool | None:
    """Whether the destination exists as a directory, where that decides placement.

    None leaves the decision to the planner: an inferred remote path, or one
    that already reads as a directory, needs no round-trip.
    """

    if spec.direction is Direction.DOWNLOAD:
        return spec.local.path.is_dir()
    if spec.remote_path_inferred or _looks_like_remote_dir(spec.remote.path):
        return None
    return remote_is_directory(spec.remote.host, spec.remote.path, ssh_args=ssh_args)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

# Failure categories, matched in order against lower-cased scp/ssh stderr.
ERROR_CATEGORIES = (
    ("auth_or_permission", ("permission denied", "publickey", "authentication")),
    ("host_key", ("host key verification failed",)),
    ("network_connectivity", ("connection refused", "connection timed out", "no route to host")),
    ("dns_resolution", ("name or service not known", "could not resolve hostname")),
    ("remote_path_or_write", ("no such file or directory", "is a directory", "read-only file system")),
    ("remote_mkdir", ("remote mkdir failed",)),
)

# These fail identically for every file, so one is enough to stop.
SYSTEMIC_CATEGORIES = frozenset({"auth_or_permission", "host_key"})


def _classify_error_message(msg: str) -> str:
    lowered = msg.lower()
    for category, needles in ERROR_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return "other"


def _is_auth_or_access_error(msg: str) -> bool:
    return _classify_error_message(msg) in SYSTEMIC_CATEGORIES


@dataclass
class CopyOutcome:
    op: CopyFile
    attempts: int = 0
    error: str = ""
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.error and not self.skipped


class ScpTransport:
    """Carries out a transfer plan against one host with ssh and scp.

    Every directory in the plan is created before the first copy starts.
    Files are then copied by a thread pool, each with its own retry budget.
    An authentication or host-key failure cancels the remaining copies, and
    so does reaching ``fail_cancel_threshold`` failures with no success yet.
    Permission bits carried by the plan are applied once the copies land.
    """

    batch_size = 200

    def __init__(
        self,
        spec: TransferSpec,
        *,
        scp_args: Iterable[str] = (),
        ssh_args: Iterable[str] = (),
        workers: int = 1,
        retry_limit: int = 3,
        fail_cancel_threshold: int = 5,
        bandwidth_limit: int | None = None,
        quiet: bool = False,
    ) -> None:
        self.spec = spec
        self.scp_args = list(scp_args)
        self.ssh_args = list(ssh_args)
        self.workers = max(1, workers)
        self.retry_limit = retry_limit
        self.fail_cancel_threshold = fail_cancel_threshold
        self.bandwidth_limit = bandwidth_limit
        self.quiet = quiet
        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._succeeded = 0
        self._failed = 0
        self._systemic_error = ""

    @property
    def upload(self) -> bool:
        return self.spec.direction is Direction.UPLOAD

    def _remote(self, verb: str, script: str) -> None:
        p = _run_ssh(self.spec.remote.host, self.ssh_args, script)
        if p.returncode != 0:
            raise RuntimeError(f"remote {verb} failed with exit code {p.returncode}{_stderr_tail(p.stderr)}")

    def _remote_batches(self, verb: str, prefix: str, paths: list[str]) -> None:
        for start in range(0, len(paths), self.batch_size):
            batch = paths[start : start + self.batch_size]
            self._remote(verb, prefix + " ".join(_quote_remote_path(p) for p in batch))

    def make_directories(self, ops: list[TransferOperation]) -> None:
        dirs = [op.destination for op in ops if isinstance(op, MakeDirectory)]
        if not dirs:
            # Single-file transfer: only the destination's parent is needed.
            parent = posixpath.dirname if self.upload else os.path.dirname
            dirs = sorted({parent(op.destination) for op in ops if isinstance(op, CopyFile)} - {"", "~"})
        if not dirs:
            return
        if self.upload:
            _status(f"creating remote directories ({len(dirs)} paths)", quiet=self.quiet)
            self._remote_batches("mkdir", "mkdir -p -- ", dirs)
            return
        try:
            for d in dirs:
                Path(d).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RuntimeError(f"failed preparing local destination path(s): {e}") from e

    def apply_modes(self, copies: Iterable[CopyFile]) -> None:
        """Give copied files the permission bits recorded in the plan."""

        by_mode: dict[int, list[str]] = {}
        for op in copies:
            if op.mode is not None:
                by_mode.setdefault(op.mode & 0o777, []).append(op.destination)
        for mode, paths in sorted(by_mode.items()):
            if self.upload:
                self._remote_batches("chmod", f"chmod {mode:o} -- ", paths)
                continue
            try:
                for path in paths:
                    os.chmod(path, mode)
            except OSError as e:
                raise RuntimeError(f"failed applying file modes: {e}") from e

    def scp_command(self, op: CopyFile, bandwidth_limit: int | None = None) -> list[str]:
        host = self.spec.remote.host
        if self.upload:
            source, destination = op.source, f"{host}:{_scp_remote_path(op.destination)}"
        else:
            source, destination = f"{host}:{_scp_remote_path(op.source)}", op.destination
        limit = ["-l", str(bandwidth_limit)] if bandwidth_limit is not None else []
        return ["scp", *self.scp_args, *limit, source, destination]

    def retry_delay(self, attempt: int) -> float:
        """Exponential backoff from half a second, with +/-25% jitter."""

        base = 0.5 * (2 ** (attempt - 1))
        return base + base * 0.25 * (2 * random.random() - 1)

    def copy(self, op: CopyFile, bandwidth_limit: int | None = None) -> CopyOutcome:
        outcome = CopyOutcome(op)
        cmd = self.scp_command(op, bandwidth_limit)
        while outcome.attempts < self.retry_limit and not self._cancel.is_set():
            outcome.attempts += 1
            p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
            if p.returncode == 0:
                outcome.error = ""
                return outcome
            outcome.error = f"scp failed with exit code {p.returncode}{_stderr_tail(p.stderr)}"
            if _is_auth_or_access_error(outcome.error) or outcome.attempts >= self.retry_limit:
                break
            if self._cancel.wait(self.retry_delay(outcome.attempts)):
                break
        outcome.skipped = not outcome.error
        return outcome

    def _copy_and_count(self, op: CopyFile, bandwidth_limit: int | None) -> CopyOutcome:
        outcome = self.copy(op, bandwidth_limit)
        with self._lock:
            if outcome.ok:
                self._succeeded += 1
            elif not outcome.skipped:
                self._failed += 1
                if _is_auth_or_access_error(outcome.error):
                    if not self._systemic_error:
                        self._systemic_error = outcome.error
                    self._cancel.set()
                elif self._succeeded == 0 and self._failed >= self.fail_cancel_threshold and not self._cancel.is_set():
                    _status(
                        f"canceling remaining transfers: no successes and {self._failed} files failed "
                        f"(threshold={self.fail_cancel_threshold})",
                        quiet=self.quiet,
                    )
                    self._cancel.set()
        return outcome

    def _report_failures(self, failed: list[CopyOutcome]) -> None:
        for outcome in failed[:10]:
            _status(
                f"failed file: {outcome.op.rel_path} (attempts={outcome.attempts}) error={outcome.error}",
                quiet=self.quiet,
            )
        for category, count in Counter(_classify_error_message(o.error) for o in failed).most_common():
            _status(f"failure category: {category} count={count}", quiet=self.quiet)
        for message, count in Counter(o.error for o in failed).most_common(3):
            _status(f"common failure ({count} files): {message}", quiet=self.quiet)

    def run(self, ops: list[TransferOperation]) -> list[CopyOutcome]:
        """Execute the plan; raise RuntimeError unless every file was copied."""

        copies = [op for op in ops if isinstance(op, CopyFile)]
        workers = min(self.workers, max(1, len(copies)))
        per_worker_limit = None
        if self.bandwidth_limit is not None:
            # Split the requested cap so the pool as a whole stays under it.
            per_worker_limit = max(1, self.bandwidth_limit // workers)
            _status(
                f"splitting -l {self.bandwidth_limit} Kbit/s across {workers} workers ({per_worker_limit} each)",
                quiet=self.quiet,
            )

        self.make_directories(ops)
        if not copies:
            _status("plan contains no files; created directory structure only", quiet=self.quiet)
            return []

        _status(
            f"copying {len(copies)} files: workers={workers}, retry_limit={self.retry_limit}, "
            f"fail_cancel_threshold={self.fail_cancel_threshold}",
            quiet=self.quiet,
        )
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="smartscp-copy") as pool:
            futures = [pool.submit(self._copy_and_count, op, per_worker_limit) for op in copies]
            outcomes = [future.result() for future in as_completed(futures)]
        outcomes.sort(key=lambda o: o.op.rel_path.split("/"))

        if self._systemic_error:
            raise RuntimeError(f"transfer aborted after systemic authentication/access error: {self._systemic_error}")
        self.apply_modes(o.op for o in outcomes if o.ok)

        failed = [o for o in outcomes if not o.ok and not o.skipped]
        skipped = sum(1 for o in outcomes if o.skipped)
        if failed or skipped:
            self._report_failures(failed)
            raise RuntimeError(
                f"transfer incomplete: success={self._succeeded}, failed={self._failed}, "
                f"skipped={skipped}, retry_limit={self.retry_limit}"
            )
        _status(f"transfer complete: files={self._succeeded}", quiet=self.quiet)
        return outcomes


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

# scp short options by letter: switches, and options that take a value.
SCP_SWITCHES = frozenset("346ABCOpqRrsTv")
SCP_VALUE_OPTIONS = frozenset("cDFiJloPSX")

# The subset ssh understands as well; scp's -P is ssh's -p.
SSH_SWITCHES = frozenset("46Cqv")
SSH_VALUE_OPTIONS = {"F": "-F", "i": "-i", "J": "-J", "o": "-o", "P": "-p"}

# smartscp's own options: long name -> (SmartscpOptions field, takes a value).
SMARTSCP_OPTIONS = {
    "--ignore-file": ("ignore_file", True),
    "--cpu-count": ("cpu_count", True),
    "--retry-limit": ("retry_limit", True),
    "--fail-cancel-threshold": ("fail_cancel_threshold", True),
    "--dry-run": ("dry_run", False),
    "--version": ("show_version", False),
}
SMARTSCP_SHORT_OPTIONS = {"Z": "--ignore-file", "Y": "--cpu-count", "V": "--version"}


@dataclass
class CommandLine:
    """One parsed invocation: smartscp options, scp flags, and operands."""

    options: SmartscpOptions = field(default_factory=SmartscpOptions)
    scp_flags: list[tuple[str, str | None]] = field(default_factory=list)
    operands: list[str] = field(default_factory=list)

    @property
    def quiet(self) -> bool:
        return any(letter == "q" for letter, _ in self.scp_flags)

    @property
    def bandwidth_limit(self) -> int | None:
        limits = [value for letter, value in self.scp_flags if letter == "l"]
        return int(limits[-1]) if limits else None

    def scp_args(self) -> list[str]:
        """scp flags to pass through; -l is left out because the transport splits it."""

        args: list[str] = []
        for letter, value in self.scp_flags:
            if letter == "l":
                continue
            args.append(f"-{letter}")
            if value is not None:
                args.append(value)
        return args

    def ssh_args(self) -> list[str]:
        args: list[str] = []
        for letter, value in self.scp_flags:
            if letter in SSH_SWITCHES:
                args.append(f"-{letter}")
            elif letter in SSH_VALUE_OPTIONS and value is not None:
                args.extend([SSH_VALUE_OPTIONS[letter], value])
        return args


def _set_option(options: SmartscpOptions, name: str, raw: str | None, shown: str) -> None:
    field_name, takes_value = SMARTSCP_OPTIONS[name]
    if not takes_value:
        setattr(options, field_name, True)
    elif field_name == "ignore_file":
        options.ignore_file = raw
    else:
        try:
            setattr(options, field_name, int(raw or ""))
        except ValueError:
            raise UsageError(f"Invalid {shown} value: {raw}") from None


def _check_ranges(command: CommandLine) -> None:
    opts = command.options
    if opts.cpu_count is not None and opts.cpu_count < 1:
        raise UsageError("cpu count must be >= 1")
    if opts.retry_limit < 1:
        raise UsageError("retry limit must be >= 1")
    if opts.fail_cancel_threshold < 1:
        raise UsageError("fail-cancel-threshold must be >= 1")
    for letter, value in command.scp_flags:
        if letter != "l":
            continue
        try:
            limit = int(value or "")
        except ValueError:
            raise UsageError(f"Invalid -l value: {value}") from None
        if limit < 1:
            raise UsageError("-l must be >= 1")


def parse_command_line(argv: Iterable[str]) -> CommandLine:
    """Split argv into smartscp options, scp flags and operands.

    Short flags may be clustered (``-vqC``) and their values attached
    (``-P2222``, ``-Y4``) or given separately. Long smartscp options accept
    ``--name value`` and ``--name=value``. Everything after ``--`` is an
    operand. Raises UsageError for anything scp or smartscp would not accept.
    """

    command = CommandLine()
    args = list(argv)
    i = 0
    while i < len(args):
        token = args[i]
        i += 1
        if token == "--":
            command.operands.extend(args[i:])
            break
        if token == "-" or not token.startswith("-"):
            command.operands.append(token)
            continue

        if token.startswith("--"):
            name, eq, value = token.partition("=")
            if name not in SMARTSCP_OPTIONS:
                raise UsageError(f"Unsupported long option: {name}")
            if SMARTSCP_OPTIONS[name][1] and not eq:
                if i >= len(args):
                    raise UsageError(f"{name} requires a value")
                value = args[i]
                i += 1
            _set_option(command.options, name, value, shown=name)
            continue

        pos = 1
        while pos < len(token):
            letter = token[pos]
            pos += 1
            long_name = SMARTSCP_SHORT_OPTIONS.get(letter)
            if long_name is None and letter not in SCP_SWITCHES and letter not in SCP_VALUE_OPTIONS:
                raise UsageError(f"Unsupported scp option: -{letter}")
            takes_value = SMARTSCP_OPTIONS[long_name][1] if long_name else letter in SCP_VALUE_OPTIONS
            value: str | None = None
            if takes_value:
                # The rest of the cluster is the value, else the next argument.
                value, pos = token[pos:], len(token)
                if not value:
                    if i >= len(args):
                        raise UsageError(f"-{letter} requires a value")
                    value = args[i]
                    i += 1
            if long_name:
                _set_option(command.options, long_name, value, shown=f"-{letter}")
            else:
                command.scp_flags.append((letter, value))

    _check_ranges(command)
    return command


def _load_extra_rules(ignore_file: str | None, spec: TransferSpec, report: WalkReport, quiet: bool) -> list[IgnoreRule]:
    """Rules from -Z; empty for downloads, which are never filtered."""

    if not ignore_file:
        return []
    path = Path(ignore_file).expanduser().resolve()
    if not path.exists():
        raise RuntimeError(f"Ignore file not found: {path}")
    if spec.direction is Direction.DOWNLOAD:
        _status("ignore-file provided but source is remote; remote paths are not filtered.", quiet=quiet)
        return []
    rules = _parse_ignore_file(path, report=report)
    _status(f"using ignore file: {path} (rules={len(rules)})", quiet=quiet)
    return rules


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint for smartscp."""

    args = sys.argv[1:] if argv is None else list(argv)
    if not args or args[0] in {"-h", "--help"}:
        print(_usage_text())
        return 0

    try:
        command = parse_command_line(args)
    except UsageError as e:
        print(str(e), file=sys.stderr)
        print(_usage_text(), file=sys.stderr)
        return 2

    options = command.options
    if options.show_version:
        print(VERSION)
        return 0
    if len(command.operands) != 2:
        print(f"Expected exactly two operands, got {len(command.operands)}.", file=sys.stderr)
        print(_usage_text(), file=sys.stderr)
        return 2

    try:
        spec = parse_endpoints(*command.operands)
    except LocalPathNotFound as e:
        print(str(e), file=sys.stderr)
        return 1
    except InvalidArguments as e:
        print(f"Invalid arguments: {e}", file=sys.stderr)
        return 2

    quiet = command.quiet
    ssh_args = command.ssh_args()
    report = WalkReport()
    try:
        extra_rules = _load_extra_rules(options.ignore_file, spec, report, quiet)
        inferred = " (inferred)" if spec.remote_path_inferred else ""
        _status(
            f"{spec.direction.value}: local={spec.local.path} remote={spec.remote.host}:{spec.remote.path}{inferred}",
            quiet=quiet,
        )

        if spec.direction is Direction.UPLOAD:
            resolver: IgnoreResolver | None = None
            if spec.local.path.is_dir():
                resolver = IgnoreResolver(spec.local.path, cache=RuleSetCache(), report=report, extra_rules=extra_rules)
            manifest = build_manifest(spec.local.path, resolver=resolver, report=report, quiet=quiet)
        else:
            manifest = list_remote_tree(spec.remote.host, spec.remote.path, ssh_args=ssh_args, quiet=quiet)

        ops = plan(manifest, spec, target_is_dir=_target_is_directory(spec, ssh_args))
        dir_ops = sum(1 for op in ops if isinstance(op, MakeDirectory))
        _status(f"plan: directories={dir_ops}, files={len(ops) - dir_ops}", quiet=quiet)

        if options.dry_run:
            for op in ops:
                print(_describe_operation(op, spec))
            return 0

        transport = ScpTransport(
            spec,
            scp_args=command.scp_args(),
            ssh_args=ssh_args,
            workers=options.cpu_count or os.cpu_count() or 1,
            retry_limit=options.retry_limit,
            fail_cancel_threshold=options.fail_cancel_threshold,
            bandwidth_limit=command.bandwidth_limit,
            quiet=quiet,
        )
        transport.run(ops)
        return 0

    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
