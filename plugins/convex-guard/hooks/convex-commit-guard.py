#!/usr/bin/env python3
# /// script
# dependencies = []
# ///
"""
convex-commit-guard: Block git commits that introduce known Convex anti-patterns.

Event: beforeShellExecution (git commit)

Purpose: Catches two common Convex mistakes before they are committed:
non-deterministic queries and unindexed table scans. Both are cheap to spot
textually and expensive to debug once deployed.

Behavior:
- Reads the hook payload from stdin (`command`, `cwd`, `workspace_roots`)
- Resolves the repository root and looks for a `convex/` directory in it
- Scans every .ts/.js file under `convex/` for both anti-patterns
- Emits {"permission": "deny", ...} if anything is found, otherwise
  {"permission": "allow"}

Triggers on:
- `git commit`, `git commit -m "..."`, `cd app && git commit -am wip`,
  `git add . && git commit;`
- Date.now() on or up to 5 lines above a `query({` line
- `.query("table").filter(...)` chains on a single line

Does NOT trigger when:
- The command is not a git commit (`git status`, `gitcommit`, `git commit-tree`)
- The repository root cannot be determined
- The repository has no `convex/` directory
- CONVEX_GUARD_DISABLE is set

Fail-open: empty input, malformed JSON, unreadable files and unexpected
errors all result in {"permission": "allow"}. The exit status is always 0;
the decision lives only in the JSON on stdout.

Configuration:
- CONVEX_GUARD_DEBUG=1 writes one diagnostic line per step to stderr
- CONVEX_GUARD_DISABLE=1 allows every command without scanning

Limitations:
- Pattern matching is line-based, not a parser; a Date.now() in a mutation
  declared just above a query will still be flagged, and one further than
  5 lines away will be missed
- Multi-line `.query(...)\\n.filter(...)` chains are not detected
"""
import json
import os
import re
import sys
from collections.abc import Iterator
from pathlib import Path

HOOK_NAME = "convex-commit-guard"

TRUTHY = {"1", "true", "yes", "on"}
DEBUG = os.environ.get("CONVEX_GUARD_DEBUG", "").strip().lower() in TRUTHY
DISABLED = os.environ.get("CONVEX_GUARD_DISABLE", "").strip().lower() in TRUTHY

SOURCE_DIR_NAME = "convex"
SOURCE_EXTENSIONS = {".ts", ".js"}

# Lines above a `query({` line that may hold a Date.now() call
DATE_NOW_WINDOW = 5

# Offending locations listed in agent_message
MAX_REPORTED_LOCATIONS = 5

# `git` and `commit` may be bounded by whitespace or shell operators, but not `-`
GIT_COMMIT_PATTERN = re.compile(r"(^|[\s;&|(])git\s+commit($|[\s;&|)])")

DATE_NOW_TOKEN = "Date.now()"
QUERY_OPEN_TOKEN = "query({"
FILTER_ON_QUERY_PATTERN = re.compile(r"\.query\(.*\)\s*\.filter\(")

NON_DETERMINISTIC_QUERY = "non-deterministic-query"
UNINDEXED_FILTER = "unindexed-filter"

MESSAGES = {
    NON_DETERMINISTIC_QUERY: (
        "Commit blocked: found Date.now() inside/near Convex query functions.",
        "This git commit was blocked because Date.now() was detected near "
        "query({}) in convex/. Convex queries are cached and re-run "
        "reactively when the data they read changes, so they must be "
        "deterministic: reading the wall clock makes results stale or "
        "inconsistent. Use server-generated timestamps in mutations "
        "(e.g. _creationTime or a field written by the mutation) or pass "
        "the time in as a query argument.",
    ),
    UNINDEXED_FILTER: (
        "Commit blocked: found .filter() on Convex db.query() calls.",
        "This git commit was blocked because .filter() was detected on "
        "db.query() in convex/. Filtering a query scans every document in "
        "the table. Define an index in schema.ts and read through it with "
        ".withIndex(), e.g. "
        "ctx.db.query(\"messages\").withIndex(\"by_channel\", "
        "(q) => q.eq(\"channel\", channel)).",
    ),
}


def debug(message: str) -> None:
    """Write a diagnostic line to stderr when CONVEX_GUARD_DEBUG is set."""
    if DEBUG:
        print(f"[{HOOK_NAME}] {message}", file=sys.stderr)


def allow() -> dict:
    return {"permission": "allow"}


def deny(user_message: str, agent_message: str) -> dict:
    return {
        "permission": "deny",
        "user_message": user_message,
        "agent_message": agent_message,
    }


def parse_input(raw: str) -> dict | None:
    """Decode the hook payload. Returns None for empty or non-object input."""
    if not raw.strip():
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return data


def extract_command(payload: dict) -> str:
    command = payload.get("command")
    if command is None:
        tool_input = payload.get("tool_input")
        if isinstance(tool_input, dict):
            command = tool_input.get("command")
    return command if isinstance(command, str) else ""


def is_git_commit(command: str) -> bool:
    return GIT_COMMIT_PATTERN.search(command) is not None


def find_vcs_root(start: Path) -> Path | None:
    """Walk upward from start looking for a .git marker."""
    for candidate in (start, *start.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def resolve_repo_root(payload: dict) -> Path | None:
    """
    Pick the repository root for this invocation.

    Precedence: first workspace root, then cwd, then the nearest .git
    ancestor of this script. Returns None when none of them is usable.
    """
    roots = payload.get("workspace_roots")
    if roots is None:
        roots = payload.get("workspaceRoots")
    if isinstance(roots, list) and roots:
        first = roots[0]
        if isinstance(first, str) and first:
            return Path(first).resolve()

    cwd = payload.get("cwd")
    if isinstance(cwd, str) and cwd:
        return Path(cwd).resolve()

    return find_vcs_root(Path(__file__).resolve().parent)


def iter_source_files(source_dir: Path) -> Iterator[Path]:
    for path in sorted(source_dir.rglob("*")):
        # Symlinks are yielded even when dangling so read_lines reports them
        if path.suffix in SOURCE_EXTENSIONS and (path.is_file() or path.is_symlink()):
            yield path


def read_lines(path: Path) -> list[str] | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError as e:
        debug(f"skipping unreadable file {path}: {e}")
        return None


def scan_lines(lines: list[str]) -> list[tuple[int, str]]:
    """
    Return (line_number, pattern) for every anti-pattern hit in lines.

    Line numbers are 1-based.
    """
    findings = []
    for index, line in enumerate(lines):
        if QUERY_OPEN_TOKEN in line:
            window = lines[max(0, index - DATE_NOW_WINDOW):index + 1]
            if any(DATE_NOW_TOKEN in candidate for candidate in window):
                findings.append((index + 1, NON_DETERMINISTIC_QUERY))
        if FILTER_ON_QUERY_PATTERN.search(line):
            findings.append((index + 1, UNINDEXED_FILTER))
    return findings


def scan_source_dir(source_dir: Path) -> list[tuple[Path, int, str]]:
    findings = []
    for path in iter_source_files(source_dir):
        lines = read_lines(path)
        if lines is None:
            continue
        for line_number, pattern in scan_lines(lines):
            findings.append((path, line_number, pattern))
    return findings


def format_location(path: Path, line_number: int, repo_root: Path) -> str:
    try:
        shown = path.relative_to(repo_root)
    except ValueError:
        shown = path
    return f"{shown.as_posix()}:{line_number}"


def build_decision(findings: list[tuple[Path, int, str]], repo_root: Path) -> dict:
    if not findings:
        return allow()

    matched = [
        pattern
        for pattern in (NON_DETERMINISTIC_QUERY, UNINDEXED_FILTER)
        if any(found == pattern for _, _, found in findings)
    ]
    user_message = " ".join(MESSAGES[pattern][0] for pattern in matched)

    locations = [
        format_location(path, line_number, repo_root)
        for path, line_number, _ in findings[:MAX_REPORTED_LOCATIONS]
    ]
    if len(findings) > MAX_REPORTED_LOCATIONS:
        locations.append(f"... and {len(findings) - MAX_REPORTED_LOCATIONS} more")
    agent_message = "\n\n".join(MESSAGES[pattern][1] for pattern in matched)
    agent_message += "\n\nFound at:\n" + "\n".join(f"- {loc}" for loc in locations)

    return deny(user_message, agent_message)


def evaluate(payload: dict | None) -> dict:
    """Run the guard on a decoded payload and return the decision object."""
    if DISABLED:
        debug("disabled via CONVEX_GUARD_DISABLE")
        return allow()

    if payload is None:
        debug("empty or malformed input")
        return allow()

    command = extract_command(payload)
    if not is_git_commit(command):
        debug(f"not a git commit: {command!r}")
        return allow()

    repo_root = resolve_repo_root(payload)
    if repo_root is None:
        debug("could not determine repository root")
        return allow()

    source_dir = repo_root / SOURCE_DIR_NAME
    if not source_dir.is_dir():
        debug(f"no {SOURCE_DIR_NAME}/ directory under {repo_root}")
        return allow()

    findings = scan_source_dir(source_dir)
    debug(f"scanned {source_dir}: {len(findings)} finding(s)")
    return build_decision(findings, repo_root)


def main():
    try:
        decision = evaluate(parse_input(sys.stdin.read()))
    except Exception as e:
        print(f"Error in {HOOK_NAME} hook: {e}", file=sys.stderr)
        decision = allow()

    print(json.dumps(decision))
    sys.exit(0)


if __name__ == "__main__":
    main()
