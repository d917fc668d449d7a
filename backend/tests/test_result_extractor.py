"""Tests for turning result archives into CSV artifacts."""

import pytest

from caseflow.core.config import settings
from caseflow.services.result_extractor import ExtractionPolicy, ExtractionReport, result_extractor

from conftest import make_case, make_zip

RESULT_URL = "https://results.test/job-1/output.zip"


@pytest.fixture()
def case(db, user):
    return make_case(db, user)


class TestExtract:
    @pytest.mark.asyncio
    async def test_stores_every_csv_entry(self, case, backend, fake_s3):
        backend.archives[RESULT_URL] = make_zip(
            {
                "HDFC_March_2024.csv": b"date,amount\n",
                "nested/ICICI_April.csv": b"date,amount\n",
                "SBI.csv": b"date,amount\n",
                "summary.json": b"{}",
            }
        )

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert report.error is None
        assert report.candidates == 3
        assert [row.csv_file_name for row in report.rows] == ["HDFC_March_2024.csv", "ICICI_April.csv", "SBI.csv"]
        assert report.rows[0].pdf_file_name == "HDFC March 2024.pdf"
        assert all(row.job_id == "job-1" and not row.is_corrected for row in report.rows)
        assert f"{user_prefix(case)}csv/original/ICICI_April.csv" in fake_s3.objects
        assert fake_s3.content_types[report.rows[0].original_csv_path] == "text/csv"

    @pytest.mark.asyncio
    async def test_ignores_macos_metadata_and_hidden_files(self, case, backend):
        backend.archives[RESULT_URL] = make_zip(
            {
                "__MACOSX/._a.csv": b"junk",
                ".hidden.csv": b"junk",
                "a.csv": b"x",
            }
        )

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert report.candidates == 1
        assert [row.csv_file_name for row in report.rows] == ["a.csv"]

    @pytest.mark.asyncio
    async def test_duplicate_base_names_are_reported(self, case, backend):
        backend.archives[RESULT_URL] = make_zip({"x/a.csv": b"1", "y/a.csv": b"2"})

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert len(report.rows) == 1
        assert report.failures == [{"entry": "y/a.csv", "error": "duplicate entry name"}]

    @pytest.mark.asyncio
    async def test_storage_failure_is_collected(self, case, backend, fake_s3):
        backend.archives[RESULT_URL] = make_zip({"a.csv": b"1", "b.csv": b"2"})
        fake_s3.fail_puts_for.add(f"{user_prefix(case)}csv/original/b.csv")

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert [row.csv_file_name for row in report.rows] == ["a.csv"]
        assert report.failures[0]["entry"] == "b.csv"
        assert report.is_acceptable(ExtractionPolicy.at_least_one)
        assert not report.is_acceptable(ExtractionPolicy.all)

    @pytest.mark.asyncio
    async def test_retries_server_errors(self, case, backend):
        backend.archives[RESULT_URL] = make_zip({"a.csv": b"1"})
        backend.download_failures[RESULT_URL] = settings.READ_RETRY_ATTEMPTS - 1

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert report.error is None
        assert len(backend.downloads) == settings.READ_RETRY_ATTEMPTS

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self, case, backend):
        backend.archives[RESULT_URL] = make_zip({"a.csv": b"1"})
        backend.download_failures[RESULT_URL] = settings.READ_RETRY_ATTEMPTS

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert "HTTP 503" in report.error
        assert not report.is_acceptable(ExtractionPolicy.at_least_one)

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, case, backend):
        report = await result_extractor.extract(case, "job-1", "https://results.test/missing.zip")

        assert "HTTP 404" in report.error
        assert len(backend.downloads) == 1

    @pytest.mark.asyncio
    async def test_invalid_zip(self, case, backend):
        backend.archives[RESULT_URL] = b"not a zip"

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert "not a valid ZIP" in report.error

    @pytest.mark.asyncio
    async def test_archive_without_csv(self, case, backend):
        backend.archives[RESULT_URL] = make_zip({"readme.txt": b"nothing here"})

        report = await result_extractor.extract(case, "job-1", RESULT_URL)

        assert report.candidates == 0
        assert not report.is_acceptable(ExtractionPolicy.at_least_one)

    @pytest.mark.asyncio
    async def test_missing_url(self, case):
        report = await result_extractor.extract(case, "job-1", None)
        assert report.error == "Result archive URL missing"


def test_summary_shape():
    report = ExtractionReport(job_id="job-9", candidates=2, failures=[{"entry": "a.csv", "error": "boom"}])
    assert report.summary() == {
        "job_id": "job-9",
        "candidates": 2,
        "extracted": 0,
        "failures": [{"entry": "a.csv", "error": "boom"}],
        "error": None,
    }


def user_prefix(case):
    return f"{case.creator_id}/{case.id}/"
