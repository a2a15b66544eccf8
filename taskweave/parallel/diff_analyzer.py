"""
Diff Analyzer
=============

Inspects what a task actually changed, as opposed to what it declared in
files_affected.

Key Features:
- Parses ``git diff --name-status`` and ``--numstat`` output into ChangedFile
  records (status, line counts, rename source)
- Caution detection: changed files matching review-required patterns
- Never-touch detection: changed files matching forbidden patterns

Patterns are either exact paths or globs. An exact path matches the file
itself or any file ending in ``/<path>``. Globs use fnmatch semantics, so
``*`` also crosses directory separators (``*.lock`` matches
``vendor/yarn.lock``).

The git calls that produce the raw output live on BranchController; this
module only parses and matches.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import re

from taskweave.parallel.overlap_analyzer import GLOB_CHARS, normalize_path

logger = logging.getLogger(__name__)

STATUS_CODES = ('A', 'M', 'D', 'R', 'C', 'T', 'U', 'X')

# "src/{old => new}/file.py" and "old.py => new.py"
_BRACE_RENAME = re.compile(r'^(.*)\{(.*) => (.*)\}(.*)$')


@dataclass
class ChangedFile:
    """
    A file changed between two refs (or in the working tree).

    Attributes:
        path: Path after the change
        status: Single letter git status (A, M, D, R, C, T, U, X)
        additions: Lines added (0 for binary files)
        deletions: Lines deleted (0 for binary files)
        previous_path: Source path for renames and copies
    """
    path: str
    status: str = 'M'
    additions: int = 0
    deletions: int = 0
    previous_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': self.path,
            'status': self.status,
            'additions': self.additions,
            'deletions': self.deletions,
            'previous_path': self.previous_path,
        }


@dataclass
class ChangedFilesResult:
    """Changed files with line totals."""
    files: List[ChangedFile] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return len(self.files)

    @property
    def total_additions(self) -> int:
        return sum(f.additions for f in self.files)

    @property
    def total_deletions(self) -> int:
        return sum(f.deletions for f in self.files)

    @property
    def paths(self) -> List[str]:
        return [f.path for f in self.files]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'files': [f.to_dict() for f in self.files],
            'total_files': self.total_files,
            'total_additions': self.total_additions,
            'total_deletions': self.total_deletions,
        }


@dataclass
class PatternMatch:
    """A changed file and the first pattern it matched."""
    file: str
    pattern: str

    def to_dict(self) -> Dict[str, str]:
        return {'file': self.file, 'pattern': self.pattern}


@dataclass
class CautionFilesResult:
    """
    Changed files that need review.

    Attributes:
        caution_files: Matching files, in change order, without duplicates
        matches: File/pattern pairs that triggered
    """
    caution_files: List[str] = field(default_factory=list)
    matches: List[PatternMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'caution_files': list(self.caution_files),
            'matches': [m.to_dict() for m in self.matches],
        }


def parse_status_code(code: str) -> str:
    """First letter of a status code (R100 -> R); unknown codes read as M."""
    letter = code[:1].upper()
    return letter if letter in STATUS_CODES else 'M'


def parse_name_status(output: str) -> Dict[str, Tuple[str, Optional[str]]]:
    """
    Parse ``git diff --name-status`` output.

    Returns:
        Mapping of path to (status, previous_path)
    """
    statuses: Dict[str, Tuple[str, Optional[str]]] = {}
    for line in output.splitlines():
        parts = line.split('\t')
        if len(parts) < 2:
            continue
        status = parse_status_code(parts[0])
        if status in ('R', 'C') and len(parts) >= 3:
            statuses[parts[2]] = (status, parts[1])
        else:
            statuses[parts[1]] = (status, None)
    return statuses


def _numstat_path(raw: str) -> str:
    """Destination path of a numstat entry, resolving rename notation."""
    match = _BRACE_RENAME.match(raw)
    if match:
        prefix, _, new, suffix = match.groups()
        return normalize_path(prefix + new + suffix)
    if ' => ' in raw:
        return raw.split(' => ', 1)[1]
    return raw


def parse_numstat(output: str) -> List[Tuple[str, int, int]]:
    """
    Parse ``git diff --numstat`` output.

    Binary files ('-' counts) report zero additions and deletions.

    Returns:
        List of (path, additions, deletions) in git's order
    """
    entries: List[Tuple[str, int, int]] = []
    for line in output.splitlines():
        parts = line.split('\t')
        if len(parts) < 3:
            continue
        additions = 0 if parts[0] == '-' else int(parts[0])
        deletions = 0 if parts[1] == '-' else int(parts[1])
        entries.append((_numstat_path('\t'.join(parts[2:])), additions, deletions))
    return entries


def build_changed_files(name_status: str, numstat: str) -> ChangedFilesResult:
    """Combine name-status and numstat output for the same diff."""
    statuses = parse_name_status(name_status)
    files = []
    for path, additions, deletions in parse_numstat(numstat):
        status, previous_path = statuses.get(path, ('M', None))
        files.append(ChangedFile(
            path=path,
            status=status,
            additions=additions,
            deletions=deletions,
            previous_path=previous_path
        ))
    return ChangedFilesResult(files=files)


def matches_pattern(file_path: str, pattern: str) -> bool:
    """Check a changed path against an exact path or glob pattern."""
    path = normalize_path(file_path)
    target = normalize_path(pattern)
    if not any(ch in target for ch in GLOB_CHARS):
        return path == target or path.endswith('/' + target)
    return fnmatchcase(path, target)


def _first_match(file_path: str, patterns: Iterable[str]) -> Optional[str]:
    for pattern in patterns:
        if matches_pattern(file_path, pattern):
            return pattern
    return None


def detect_caution_files(changed_files: Iterable[str], patterns: Iterable[str]) -> CautionFilesResult:
    """
    Find changed files that match caution (review required) patterns.

    Each file is reported once, with the first pattern it matched.
    """
    pattern_list = list(patterns)
    result = CautionFilesResult()
    for file_path in changed_files:
        if file_path in result.caution_files:
            continue
        pattern = _first_match(file_path, pattern_list)
        if pattern is not None:
            result.caution_files.append(file_path)
            result.matches.append(PatternMatch(file=file_path, pattern=pattern))

    if result.caution_files:
        logger.info(f"Caution files changed: {', '.join(result.caution_files)}")
    return result


def detect_never_touch_violations(changed_files: Iterable[str], patterns: Iterable[str]) -> List[PatternMatch]:
    """Find changed files matching never-touch patterns, one violation per file."""
    pattern_list = list(patterns)
    violations: List[PatternMatch] = []
    for file_path in changed_files:
        pattern = _first_match(file_path, pattern_list)
        if pattern is not None:
            violations.append(PatternMatch(file=file_path, pattern=pattern))

    for violation in violations:
        logger.warning(f"Never-touch file changed: {violation.file} (matches {violation.pattern})")
    return violations
