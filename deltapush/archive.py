from __future__ import annotations

import io
import zipfile
from datetime import date

from deltapush.models import LocalFile


def default_archive_name(repo_name: str, today: date | None = None) -> str:
    today = today or date.today()
    return f"{repo_name or 'project'}_{today.isoformat()}.zip"


def build_zip_archive(files: list[LocalFile]) -> bytes:
    """Pack files into an in-memory DEFLATE zip with stable member order and timestamps."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for local in sorted(files, key=lambda item: item.path):
            info = zipfile.ZipInfo(local.path, date_time=(1980, 1, 1, 0, 0, 0))
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            archive.writestr(info, local.content)
    return buffer.getvalue()
