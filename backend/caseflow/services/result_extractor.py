"""
Result Extractor
================
Turns an initial-parse result archive into per-statement CSV artifacts.

For each ``.csv`` entry the bytes are stored at
``{owner}/{case}/csv/original/{name}`` and a pending ``CaseCsvFile`` row is
built. Rows are returned unsaved: the reconciler decides, under the
configured policy, whether to persist them together with the Review
transition or to discard them.

Per-entry failures are collected on the report, never raised.
"""
from __future__ import annotations

import asyncio
import enum
import io
import logging
import os
import zipfile
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from caseflow.core.config import settings
from caseflow.db.models import Case, CaseCsvFile
from caseflow.services.storage_gateway import StorageGateway, storage_gateway
from caseflow.utils.exceptions import ExtractionError
from caseflow.utils.helpers import pdf_name_for_csv

logger = logging.getLogger(__name__)


class ExtractionPolicy(str, enum.Enum):
    at_least_one = "at_least_one"
    all = "all"


@dataclass
class ExtractionReport:
    job_id: str
    candidates: int = 0
    rows: List[CaseCsvFile] = field(default_factory=list)
    failures: List[dict] = field(default_factory=list)
    error: Optional[str] = None

    def is_acceptable(self, policy: ExtractionPolicy) -> bool:
        if self.error or self.candidates == 0 or not self.rows:
            return False
        if policy is ExtractionPolicy.all:
            return len(self.rows) == self.candidates
        return True

    def summary(self) -> dict:
        return {
            "job_id": self.job_id,
            "candidates": self.candidates,
            "extracted": len(self.rows),
            "failures": self.failures,
            "error": self.error,
        }


def is_csv_entry(info: zipfile.ZipInfo) -> bool:
    if info.is_dir():
        return False
    name = info.filename
    if name.startswith("__MACOSX/"):
        return False
    base = os.path.basename(name)
    return bool(base) and not base.startswith(".") and base.lower().endswith(".csv")


class ResultExtractor:
    def __init__(
        self,
        storage: Optional[StorageGateway] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.storage = storage or storage_gateway
        self.transport = transport

    async def download(self, url: str) -> bytes:
        """
        GET the archive with linear backoff. Only transport errors and 5xx
        are retried; a 4xx is final.
        """
        attempts = max(1, settings.READ_RETRY_ATTEMPTS)
        last_err: Optional[str] = None
        async with httpx.AsyncClient(
            timeout=settings.BACKEND_TIMEOUT_SECONDS,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            for attempt in range(1, attempts + 1):
                try:
                    resp = await client.get(url)
                    if resp.status_code < 400:
                        return resp.content
                    last_err = f"HTTP {resp.status_code}: {resp.text[:200]}"
                    if resp.status_code < 500:
                        break
                except httpx.TransportError as exc:
                    last_err = str(exc) or type(exc).__name__

                if attempt < attempts:
                    sleep_s = attempt * settings.READ_RETRY_BASE_DELAY_SECONDS
                    logger.warning("Result download attempt failed (%s/%s): %s", attempt, attempts, last_err)
                    await asyncio.sleep(sleep_s)

        raise ExtractionError(f"Could not download result archive: {last_err}")

    async def extract(self, case: Case, job_id: str, archive_url: str) -> ExtractionReport:
        report = ExtractionReport(job_id=job_id)

        if not archive_url:
            report.error = "Result archive URL missing"
            return report

        try:
            blob = await self.download(archive_url)
        except ExtractionError as exc:
            report.error = str(exc)
            return report

        try:
            zf = zipfile.ZipFile(io.BytesIO(blob))
        except zipfile.BadZipFile as exc:
            report.error = f"Result archive is not a valid ZIP: {exc}"
            return report

        with zf:
            entries = [info for info in zf.infolist() if is_csv_entry(info)]
            report.candidates = len(entries)
            seen: set[str] = set()

            for info in entries:
                csv_name = os.path.basename(info.filename)
                if csv_name in seen:
                    report.failures.append({"entry": info.filename, "error": "duplicate entry name"})
                    continue
                seen.add(csv_name)

                try:
                    data = zf.read(info)
                    path = self.storage.csv_path(case.creator_id, case.id, csv_name)
                    await asyncio.to_thread(self.storage.put, path, data, "text/csv")
                except Exception as exc:
                    logger.warning("CSV entry %s for case %s not extracted: %s", info.filename, case.id, exc)
                    report.failures.append({"entry": info.filename, "error": str(exc)})
                    continue

                report.rows.append(
                    CaseCsvFile(
                        case_id=case.id,
                        job_id=job_id,
                        pdf_file_name=pdf_name_for_csv(csv_name),
                        csv_file_name=csv_name,
                        original_csv_path=path,
                        is_corrected=False,
                    )
                )

        logger.info(
            "Extracted result archive for case %s job %s: %s/%s entries (%s failed)",
            case.id, job_id, len(report.rows), report.candidates, len(report.failures),
        )
        return report


result_extractor = ResultExtractor()
