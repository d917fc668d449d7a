"""
Utility helper functions
"""
import os
import re
from datetime import datetime, timezone
from uuid import uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


def sanitize_file_name(filename: str) -> str:
    """
    Storage-safe file name. The same name is used for the S3 key and the
    archive entry, so it must be stable for a given input. A name with
    nothing usable left gets a generated one, different on every call.
    """
    base = os.path.basename((filename or "").replace("\\", "/"))
    base = re.sub(r"[^A-Za-z0-9._-]+", "_", base.strip()).strip("._")
    return base[:160] or f"document_{uuid4().hex[:8]}.pdf"


def pdf_name_for_csv(csv_name: str) -> str:
    """
    Infer the source statement name for an extracted CSV entry:
    extension swapped to .pdf, underscores read back as spaces.

        "HDFC_March_2024.csv" -> "HDFC March 2024.pdf"
    """
    stem, _ = os.path.splitext(os.path.basename(csv_name))
    return f"{stem.replace('_', ' ')}.pdf"


def is_pdf(filename: str, content_type: str = "") -> bool:
    return (filename or "").lower().endswith(".pdf") or content_type == "application/pdf"


def truncate_text(text: str, max_length: int = 500) -> str:
    """Truncate text to max length"""
    if not text or len(text) <= max_length:
        return text or ""
    return text[:max_length - 3] + "..."
