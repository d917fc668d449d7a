"""
Archive Builder
===============
Packs an in-memory batch of statements into a single ZIP for the analysis
backend, optionally with a ``password.txt`` manifest for protected PDFs:

    {"version": 1, "protected_files": [{"filename": "...", "password": "..."}]}

Entry names are the sanitized storage names, so every entry maps 1:1 to a
stored blob. File content is read exactly once (``read_sources``) and the
same bytes feed both the per-file upload and the archive.
"""
from __future__ import annotations

import io
import json
import zipfile
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from fastapi import UploadFile

from caseflow.core.logger import logger
from caseflow.utils.exceptions import ArchiveBuildError
from caseflow.utils.helpers import sanitize_file_name

PASSWORD_MANIFEST_NAME = "password.txt"
PASSWORD_MANIFEST_VERSION = 1

ArchiveEntry = Tuple[str, bytes]


async def read_sources(uploads: Iterable[UploadFile]) -> List[ArchiveEntry]:
    """
    Read every upload into memory once. Any failure aborts the whole batch.
    """
    entries: List[ArchiveEntry] = []
    for upload in uploads:
        name = sanitize_file_name(upload.filename or "")
        try:
            data = await upload.read()
        except Exception as exc:
            logger.error("Failed to read upload %s: %s", upload.filename, exc)
            raise ArchiveBuildError(f"Could not read {upload.filename}: {exc}") from exc
        if not data:
            raise ArchiveBuildError(f"{upload.filename} is empty")
        entries.append((name, data))
    return entries


def build_password_manifest(passwords: Mapping[str, str]) -> bytes:
    manifest = {
        "version": PASSWORD_MANIFEST_VERSION,
        "protected_files": [
            {"filename": filename, "password": password}
            for filename, password in passwords.items()
        ],
    }
    return json.dumps(manifest, indent=2).encode("utf-8")


def build_archive(
    files: Sequence[ArchiveEntry],
    passwords: Optional[Mapping[str, str]] = None,
) -> bytes:
    """
    Build a ZIP from ``(name, bytes)`` pairs in the given order.

    ``passwords`` maps archive entry names to their PDF passwords; entries
    without a password are left out of the manifest.
    """
    if not files:
        raise ArchiveBuildError("No files to archive")

    seen: set[str] = set()
    for name, _ in files:
        if not name:
            raise ArchiveBuildError("Archive entry without a name")
        if name == PASSWORD_MANIFEST_NAME:
            raise ArchiveBuildError(f"{PASSWORD_MANIFEST_NAME} is a reserved file name")
        if name in seen:
            raise ArchiveBuildError(f"Duplicate archive entry: {name}")
        seen.add(name)

    protected = {name: pw for name, pw in (passwords or {}).items() if pw}
    unknown = sorted(set(protected) - seen)
    if unknown:
        raise ArchiveBuildError(f"Passwords given for files not in the archive: {', '.join(unknown)}")

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, data in files:
            zf.writestr(name, data)
        if protected:
            zf.writestr(PASSWORD_MANIFEST_NAME, build_password_manifest(protected))

    logger.info(
        "Built archive: files=%s protected=%s bytes=%s",
        len(files), len(protected), buffer.tell(),
    )
    return buffer.getvalue()


def extract_archive(blob: bytes) -> Dict[str, bytes]:
    """Read every file entry of a ZIP into memory, keyed by entry name."""
    try:
        with zipfile.ZipFile(io.BytesIO(blob)) as zf:
            return {
                info.filename: zf.read(info)
                for info in zf.infolist()
                if not info.is_dir()
            }
    except zipfile.BadZipFile as exc:
        raise ArchiveBuildError(f"Not a valid ZIP archive: {exc}") from exc


def read_password_manifest(blob: bytes) -> Dict[str, str]:
    """Return ``{filename: password}`` from an archive's manifest, or {}."""
    entries = extract_archive(blob)
    raw = entries.get(PASSWORD_MANIFEST_NAME)
    if raw is None:
        return {}
    manifest = json.loads(raw.decode("utf-8"))
    return {item["filename"]: item["password"] for item in manifest.get("protected_files", [])}
