from __future__ import annotations

import logging
import os
import zipfile
from pathlib import Path, PurePosixPath

from deltapush.config import APP_NAME, CONFIG_FILENAME
from deltapush.filters import ExclusionRules
from deltapush.models import SYMLINK_MODE, LocalFile


logger = logging.getLogger(APP_NAME)

EXCLUDED_FILENAMES = {CONFIG_FILENAME}
BINARY_EXTENSIONS = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".ico",
        ".pdf",
        ".zip",
        ".woff",
        ".woff2",
        ".ttf",
        ".eot",
        ".mp4",
        ".mp3",
        ".svg",
        ".webp",
        ".avif",
        ".wasm",
    }
)
ZIP_SKIPPED_PREFIXES = ("__MACOSX/",)


def is_binary_path(path: str) -> bool:
    return PurePosixPath(path).suffix.lower() in BINARY_EXTENSIONS


def _effective_rules(rules: ExclusionRules | None) -> ExclusionRules:
    return (rules or ExclusionRules()).with_extra(file_names=EXCLUDED_FILENAMES)


def enumerate_local_files(root: Path, rules: ExclusionRules | None = None) -> list[LocalFile]:
    """Walk ``root`` and read every publishable file.

    The walk is driven by an explicit stack, never follows directory symlinks,
    and skips unreadable entries with a warning instead of failing.
    """
    root = root.resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Project root does not exist or is not a directory: {root}")

    rules = _effective_rules(rules)
    files: list[LocalFile] = []
    stack: list[tuple[Path, tuple[str, ...]]] = [(root, ())]

    while stack:
        directory, rel_parts = stack.pop()
        try:
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda entry: entry.name)
        except OSError as exc:
            logger.warning("Skipping unreadable directory %s: %s", directory, exc)
            continue

        for entry in entries:
            parts = (*rel_parts, entry.name)
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
            except OSError as exc:
                logger.warning("Skipping %s: %s", "/".join(parts), exc)
                continue

            if is_dir:
                if not rules.excludes_dir(entry.name):
                    stack.append((Path(entry.path), parts))
                continue

            relative_path = "/".join(parts)
            if rules.excludes_path(relative_path):
                continue

            if entry.is_symlink():
                # Git stores a link as a blob holding its target path.
                try:
                    target = os.readlink(entry.path)
                except OSError as exc:
                    logger.warning("Skipping unreadable symlink %s: %s", relative_path, exc)
                    continue
                files.append(
                    LocalFile(
                        path=relative_path,
                        content=os.fsencode(target),
                        is_binary=False,
                        mode=SYMLINK_MODE,
                    )
                )
                continue

            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                with open(entry.path, "rb") as fh:
                    content = fh.read()
            except OSError as exc:
                logger.warning("Skipping unreadable file %s: %s", relative_path, exc)
                continue

            files.append(
                LocalFile(path=relative_path, content=content, is_binary=is_binary_path(relative_path))
            )

    files.sort(key=lambda item: item.path)
    logger.debug("Enumerated %d file(s) under %s", len(files), root)
    return files


def enumerate_zip_files(zip_path: Path, rules: ExclusionRules | None = None) -> list[LocalFile]:
    """Read a project archive as if it were the project directory."""
    rules = _effective_rules(rules)
    files: list[LocalFile] = []

    try:
        archive = zipfile.ZipFile(zip_path)
    except (OSError, zipfile.BadZipFile) as exc:
        raise FileNotFoundError(f"Cannot open project archive {zip_path}: {exc}") from exc

    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            relative_path = info.filename.replace("\\", "/").lstrip("/")
            if not relative_path or relative_path.startswith(ZIP_SKIPPED_PREFIXES):
                continue
            if ".." in PurePosixPath(relative_path).parts:
                logger.warning("Skipping archive member outside the project: %s", info.filename)
                continue
            if rules.excludes_path(relative_path):
                continue
            try:
                content = archive.read(info)
            except (OSError, zipfile.BadZipFile, RuntimeError) as exc:
                logger.warning("Skipping unreadable archive member %s: %s", relative_path, exc)
                continue
            files.append(
                LocalFile(path=relative_path, content=content, is_binary=is_binary_path(relative_path))
            )

    files.sort(key=lambda item: item.path)
    return files
