from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml

from deltapush.config import APP_NAME


logger = logging.getLogger(APP_NAME)

TOKEN_ENV_NAMES = ("GITHUB_TOKEN", "GH_TOKEN")


def resolve_github_token(config_token: str | None = None) -> str | None:
    """Resolve a GitHub token from env, config, or the GitHub CLI login cache."""
    for env_name in TOKEN_ENV_NAMES:
        value = os.getenv(env_name, "").strip()
        if value:
            return value

    if config_token and config_token.strip():
        return config_token.strip()

    for path in _hosts_file_candidates():
        try:
            if path.exists() and path.is_file():
                value = _token_from_hosts_file(path.read_text(encoding="utf-8"))
                if value:
                    return value
        except OSError:
            continue

    return None


def _token_from_hosts_file(text: str) -> str | None:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.debug("Ignoring unreadable gh hosts file: %s", exc)
        return None
    if not isinstance(data, dict):
        return None
    host = data.get("github.com")
    if not isinstance(host, dict):
        return None

    token = host.get("oauth_token")
    if not token:
        # Multi-account layout: the active login's token may live under `users`.
        users = host.get("users")
        active = users.get(host.get("user")) if isinstance(users, dict) else None
        token = active.get("oauth_token") if isinstance(active, dict) else None
    if not token:
        return None
    return str(token).strip() or None


def _hosts_file_candidates() -> list[Path]:
    home = Path.home()
    candidates: list[Path] = []

    gh_config_dir = os.getenv("GH_CONFIG_DIR")
    if gh_config_dir:
        candidates.append(Path(gh_config_dir) / "hosts.yml")

    xdg_config_home = os.getenv("XDG_CONFIG_HOME")
    if xdg_config_home:
        candidates.append(Path(xdg_config_home) / "gh" / "hosts.yml")

    appdata = os.getenv("APPDATA")
    if appdata:
        candidates.append(Path(appdata) / "GitHub CLI" / "hosts.yml")

    candidates.append(home / ".config" / "gh" / "hosts.yml")

    unique: list[Path] = []
    seen: set[str] = set()
    for path in candidates:
        key = str(path).lower()
        if key not in seen:
            seen.add(key)
            unique.append(path)
    return unique


def missing_token_hint() -> str:
    return (
        "This command requires a GitHub token with `contents: write` access. Set `GITHUB_TOKEN`, "
        "run `gh auth login`, or update `.deltapush.json`."
    )
