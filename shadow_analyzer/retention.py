"""Keep only the newest N artifacts of a kind in the clips directory."""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path

from shadow_analyzer.models import RetentionSet

_log = logging.getLogger("retention")


def _is_protected(path: Path, excluded: frozenset[Path], names: frozenset[str]) -> bool:
    if path.name in names:
        return True
    try:
        resolved = path.resolve()
    except OSError:
        resolved = path
    return path in excluded or resolved in excluded


def eligible_files(rule: RetentionSet) -> list[tuple[float, Path]]:
    """Files subject to ``rule``, newest first, as ``(mtime, path)`` pairs."""

    excluded = frozenset(rule.excluded_paths) | frozenset(
        p.resolve() for p in rule.excluded_paths
    )
    found: list[tuple[float, Path]] = []
    try:
        entries = list(rule.directory.iterdir())
    except FileNotFoundError:
        return []
    for entry in entries:
        name = entry.name
        if not fnmatch.fnmatch(name, rule.match):
            continue
        if any(fnmatch.fnmatch(name, pattern) for pattern in rule.ignore):
            continue
        if _is_protected(entry, excluded, rule.protected_names):
            continue
        try:
            stat = entry.stat()
        except OSError:
            continue
        if not entry.is_file():
            continue
        found.append((stat.st_mtime, entry))
    found.sort(key=lambda item: (item[0], item[1].name), reverse=True)
    return found


def prune(rule: RetentionSet) -> list[Path]:
    """Delete everything beyond the newest ``keep_count`` eligible files.

    Returns the removed paths. Excluded and protected files are never
    counted or removed.
    """

    keep = max(0, int(rule.keep_count))
    candidates = eligible_files(rule)
    removed: list[Path] = []
    for _, path in candidates[keep:]:
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            _log.warning("unable to remove %s: %s", path, exc)
            continue
        removed.append(path)
    if removed:
        _log.debug("pruned %d file(s) from %s", len(removed), rule.directory)
    return removed


__all__ = ["eligible_files", "prune"]
