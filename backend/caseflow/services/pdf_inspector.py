"""
PDF checks run on upload: page count, and whether a protected statement came
with a password that actually opens it.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional

from pypdf import PdfReader
from pypdf.errors import PdfReadError

logger = logging.getLogger(__name__)


@dataclass
class PdfInfo:
    page_count: Optional[int]
    is_encrypted: bool
    needs_password: bool
    password_ok: bool


class InvalidPdfError(ValueError):
    pass


def inspect_pdf(data: bytes, password: Optional[str] = None) -> PdfInfo:
    try:
        reader = PdfReader(io.BytesIO(data))
    except (PdfReadError, ValueError, OSError) as exc:
        raise InvalidPdfError(f"Unreadable PDF: {exc}") from exc

    if not reader.is_encrypted:
        return PdfInfo(page_count=len(reader.pages), is_encrypted=False, needs_password=False, password_ok=True)

    # Owner-only protection opens with an empty user password
    if reader.decrypt(""):
        return PdfInfo(page_count=len(reader.pages), is_encrypted=True, needs_password=False, password_ok=True)

    if not password:
        return PdfInfo(page_count=None, is_encrypted=True, needs_password=True, password_ok=False)

    if not reader.decrypt(password):
        logger.info("PDF password rejected")
        return PdfInfo(page_count=None, is_encrypted=True, needs_password=True, password_ok=False)

    return PdfInfo(page_count=len(reader.pages), is_encrypted=True, needs_password=True, password_ok=True)
