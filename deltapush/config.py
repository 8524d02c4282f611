from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import urlparse

from deltapush.errors import ConfigurationError


APP_NAME = "deltapush"
CONFIG_FILENAME = ".deltapush.json"
DEFAULT_BRANCH = "main"
DEFAULT_API_URL = "https://api.github.com"
GITHUB_HOSTS = {"github.com", "www.github.com"}


@dataclass(slots=True)
class RepoRef:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, repo_id: str) -> "RepoRef":
        normalized = normalize_repo_id(repo_id)
        parts = normalized.split("/")
        if len(parts) != 2 or not all(parts):
            raise ConfigurationError(
                f"Repository must look like `owner/name`, got {repo_id!r}."
            )
        return cls(owner=parts[0], name=parts[1])


@dataclass(slots=True)
class DeltaPushConfig:
    repo_id: str
    token: str
    local_root: str
    branch: str = DEFAULT_BRANCH
    api_url: str = DEFAULT_API_URL

    @property
    def local_root_path(self) -> Path:
        return Path(self.local_root).resolve()

    @property
    def repo(self) -> RepoRef:
        return RepoRef.parse(self.repo_id)

    def validate(self) -> None:
        RepoRef.parse(self.repo_id)
        if not self.branch or not self.branch.strip():
            raise ConfigurationError("Branch name must not be empty.")
        if any(ch in self.branch for ch in (" ", "~", "^", ":", "\\")) or ".." in self.branch:
            raise ConfigurationError(f"Invalid branch name: {self.branch!r}")
        if not self.api_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"api_url must be an http(s) URL, got {self.api_url!r}")


def config_path(base_dir: Path | None = None) -> Path:
    return (base_dir or Path.cwd()).resolve() / CONFIG_FILENAME


def load_config(base_dir: Path | None = None) -> DeltaPushConfig:
    path = config_path(base_dir)
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}. Run `dp init <owner/repo>` first."
        )

    with path.open("r", encoding="utf-8") as fh:
        data = json.load(fh)

    return DeltaPushConfig(
        repo_id=normalize_repo_id(data["repo_id"]),
        token=data.get("token", ""),
        local_root=data["local_root"],
        branch=data.get("branch") or DEFAULT_BRANCH,
        api_url=data.get("api_url") or DEFAULT_API_URL,
    )


def save_config(config: DeltaPushConfig, base_dir: Path | None = None) -> Path:
    path = config_path(base_dir)
    payload = asdict(config)
    payload["repo_id"] = normalize_repo_id(str(payload["repo_id"]))
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")
    return path


def default_token() -> str:
    return os.getenv("GITHUB_TOKEN", "")


def default_branch() -> str:
    return os.getenv("GITHUB_WORKFLOW_REF", "").strip() or DEFAULT_BRANCH


def default_repo_id() -> str:
    owner = os.getenv("GITHUB_REPO_OWNER", "").strip()
    name = os.getenv("GITHUB_REPO_NAME", "").strip()
    if owner and name:
        return f"{owner}/{name}"
    return ""


def normalize_repo_id(repo_id: str) -> str:
    value = (repo_id or "").strip()
    if not value:
        return value

    # SSH form used by Git-over-SSH (`git@github.com:owner/repo.git`)
    if value.startswith("git@github.com:"):
        value = value.split(":", 1)[1].strip()
        if value.endswith(".git"):
            value = value[:-4]
        return value.strip("/")

    if "://" not in value:
        return value.strip("/")

    parsed = urlparse(value)
    if parsed.hostname not in GITHUB_HOSTS:
        return value

    path = parsed.path.strip("/")
    if path.endswith(".git"):
        path = path[:-4]
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 2:
        return f"{parts[0]}/{parts[1]}"
    return path
