from __future__ import annotations

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import PurePosixPath


DEFAULT_EXCLUDED_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        ".next",
        "dist",
        "build",
        ".vercel",
        ".turbo",
        "__MACOSX",
        "__pycache__",
        ".venv",
        "venv",
    }
)

DEFAULT_EXCLUDED_FILES = frozenset(
    {
        ".DS_Store",
        ".npmrc",
        ".yarnrc",
        ".yarnrc.yml",
        "bun.lock",
        "package-lock.json",
    }
)

DEFAULT_EXCLUDED_SUFFIXES: tuple[str, ...] = (".pyc",)

# Secret-looking names are matched against the bare file name.
DEFAULT_SECRET_PATTERNS: tuple[str, ...] = (
    ".env*",
    "*.key",
    "*.pem",
    "secrets.*",
    ".secrets",
)


def _normalize_pattern(pattern: str) -> str:
    normalized = pattern.strip().replace("\\", "/")
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _match_pattern(path: str, pattern: str) -> bool:
    path_obj = PurePosixPath(path)
    norm = _normalize_pattern(pattern)
    if not norm:
        return False
    # Support both repo-root anchored and recursive matching styles.
    return (
        path_obj.match(norm)
        or path_obj.match(f"**/{norm}")
        or (norm.endswith("/") and path.startswith(norm))
    )


@dataclass(slots=True)
class PathFilter:
    include_patterns: tuple[str, ...] = ()
    exclude_patterns: tuple[str, ...] = ()

    def matches(self, path: str) -> bool:
        if self.include_patterns and not any(
            _match_pattern(path, pattern) for pattern in self.include_patterns
        ):
            return False
        if any(_match_pattern(path, pattern) for pattern in self.exclude_patterns):
            return False
        return True


def build_path_filter(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> PathFilter:
    include = tuple(_normalize_pattern(pattern) for pattern in (include_patterns or []) if pattern)
    exclude = tuple(_normalize_pattern(pattern) for pattern in (exclude_patterns or []) if pattern)
    return PathFilter(include_patterns=include, exclude_patterns=exclude)


@dataclass(slots=True, frozen=True)
class ExclusionRules:
    """Everything the enumerator refuses to publish, in one place.

    Directory names short-circuit the whole subtree. File names, suffixes and
    secret patterns apply to the final path component. ``path_filter`` carries
    the user's include/exclude globs and is checked against the full relative
    path last.
    """

    dir_names: frozenset[str] = DEFAULT_EXCLUDED_DIRS
    file_names: frozenset[str] = DEFAULT_EXCLUDED_FILES
    suffixes: tuple[str, ...] = DEFAULT_EXCLUDED_SUFFIXES
    secret_patterns: tuple[str, ...] = DEFAULT_SECRET_PATTERNS
    path_filter: PathFilter = field(default_factory=PathFilter)

    def excludes_dir(self, name: str) -> bool:
        return name in self.dir_names

    def excludes_file(self, name: str) -> bool:
        if name in self.file_names:
            return True
        if self.suffixes and name.endswith(self.suffixes):
            return True
        return any(fnmatchcase(name, pattern) for pattern in self.secret_patterns)

    def excludes_path(self, relative_path: str) -> bool:
        """Check a full POSIX relative path, including every parent directory."""
        parts = PurePosixPath(relative_path).parts
        if not parts:
            return True
        if any(self.excludes_dir(part) for part in parts[:-1]):
            return True
        if self.excludes_file(parts[-1]):
            return True
        return not self.path_filter.matches(relative_path)

    def with_extra(
        self,
        *,
        file_names: set[str] | frozenset[str] = frozenset(),
        dir_names: set[str] | frozenset[str] = frozenset(),
    ) -> "ExclusionRules":
        return ExclusionRules(
            dir_names=self.dir_names | frozenset(dir_names),
            file_names=self.file_names | frozenset(file_names),
            suffixes=self.suffixes,
            secret_patterns=self.secret_patterns,
            path_filter=self.path_filter,
        )


def build_exclusion_rules(
    include_patterns: list[str] | tuple[str, ...] | None = None,
    exclude_patterns: list[str] | tuple[str, ...] | None = None,
) -> ExclusionRules:
    return ExclusionRules(path_filter=build_path_filter(include_patterns, exclude_patterns))
