"""Tests for the upload service."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

from convoy.errors import BackendTransportError, EmptyContentError, UploadFailedError
from convoy.tokens import ApproxCharCounter
from convoy.uploads import UploadOptions, UploadService, estimate_upload_time, should_use_file_upload
from tests.helpers import FakeBackend, RecordingSleep, transport_error


def _service(backend: FakeBackend, tmp_path: Path, sleep: RecordingSleep, **options) -> UploadService:
    return UploadService(
        backend,
        UploadOptions(temp_dir=tmp_path, **options),
        estimator=ApproxCharCounter(),
        sleep=sleep,
    )


class TestUploadText:
    @pytest.mark.asyncio
    async def test_uploads_and_cleans_up(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        service = _service(backend, tmp_path, recording_sleep)
        content = "Large context " * 100

        result = await service.upload_text(content)

        assert result.file_id == "file-1"
        assert result.tokens == ApproxCharCounter().estimate(content)
        assert result.file_size_bytes == len(content.encode("utf-8"))
        assert re.fullmatch(r"context-\d+-[0-9a-f]{8}\.txt", result.filename)
        assert result.temp_path is None
        assert list(tmp_path.iterdir()) == []
        assert backend.uploads[0]["data"] == content.encode("utf-8")
        assert backend.uploads[0]["content_type"] == "text/plain"
        assert service.get_upload_info("file-1") == result
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_keeps_payload_without_auto_cleanup(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        service = _service(backend, tmp_path, recording_sleep, auto_cleanup=False)

        result = await service.upload_text("keep me around", filename="notes.md")

        assert result.filename.startswith("notes-") and result.filename.endswith(".md")
        assert result.temp_path is not None
        assert result.temp_path.read_text(encoding="utf-8") == "keep me around"

        assert service.cleanup_temp_files() == 1
        assert not result.temp_path.exists()
        info = service.get_upload_info(result.file_id)
        assert info is not None and info.temp_path is None
        assert service.cleanup_temp_files() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("content", ["", "   \n"])
    async def test_blank_content_is_rejected(
        self, content: str, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        service = _service(backend, tmp_path, recording_sleep)

        with pytest.raises(EmptyContentError) as excinfo:
            await service.upload_text(content)

        assert str(excinfo.value) == "[empty_content] Content cannot be empty for file upload"
        assert backend.calls == []


class TestRetries:
    @pytest.mark.asyncio
    async def test_recovers_after_two_transient_failures(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        backend.fail["upload_file"] = [transport_error(), transport_error(), None]
        service = _service(backend, tmp_path, recording_sleep)

        result = await service.upload_text("payload")

        assert result.file_id == "file-1"
        assert backend.count("upload_file") == 3
        assert recording_sleep.delays == [1.0, 2.0]
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        backend.fail["upload_file"] = [transport_error()] * 3
        service = _service(backend, tmp_path, recording_sleep)

        with pytest.raises(UploadFailedError) as excinfo:
            await service.upload_text("payload")

        error = excinfo.value
        assert error.attempts == 3
        assert isinstance(error.last_error, BackendTransportError)
        assert error.__cause__ is error.last_error
        assert backend.count("upload_file") == 3
        assert recording_sleep.delays == [1.0, 2.0]
        assert list(tmp_path.iterdir()) == []
        assert service.tracked_uploads() == []

    @pytest.mark.asyncio
    async def test_single_attempt_override(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        backend.fail["upload_file"] = [transport_error()]
        service = _service(backend, tmp_path, recording_sleep)

        with pytest.raises(UploadFailedError) as excinfo:
            await service.upload_text("payload", max_retries=1)

        assert excinfo.value.attempts == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_not_retried(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        backend.fail["upload_file"] = [RuntimeError("disk on fire")]
        service = _service(backend, tmp_path, recording_sleep)

        with pytest.raises(RuntimeError, match="disk on fire"):
            await service.upload_text("payload")

        assert backend.count("upload_file") == 1
        assert recording_sleep.delays == []


class TestExistingFiles:
    @pytest.mark.asyncio
    async def test_uploads_existing_file_without_removing_it(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        source = tmp_path / "report.txt"
        source.write_text("quarterly numbers", encoding="utf-8")
        service = UploadService(backend, estimator=ApproxCharCounter(), sleep=recording_sleep)

        result = await service.upload_existing_file(source)

        assert result.filename == "report.txt"
        assert result.tokens == ApproxCharCounter().estimate("quarterly numbers")
        assert source.exists()
        assert [upload.file_id for upload in service.tracked_uploads()] == ["file-1"]
        assert service.forget("file-1") == result
        assert service.get_upload_info("file-1") is None

    @pytest.mark.asyncio
    async def test_missing_file_raises(
        self, backend: FakeBackend, tmp_path: Path, recording_sleep: RecordingSleep
    ) -> None:
        service = UploadService(backend, sleep=recording_sleep)

        with pytest.raises(FileNotFoundError):
            await service.upload_existing_file(tmp_path / "missing.txt")

        assert backend.calls == []


class TestDecisionHelpers:
    def test_explicit_strategy_wins(self) -> None:
        assert should_use_file_upload("tiny", "file")
        assert should_use_file_upload("tiny", "hybrid")
        assert not should_use_file_upload("x" * 1_000_000, "direct", estimator=ApproxCharCounter())

    def test_threshold_applies_without_override(self) -> None:
        counter = ApproxCharCounter()

        assert should_use_file_upload("x" * (4 * 200_001), estimator=counter)
        assert not should_use_file_upload("x" * (4 * 200_000), estimator=counter)

    def test_service_delegates_to_module_helper(self, backend: FakeBackend) -> None:
        service = UploadService(backend, estimator=ApproxCharCounter())

        assert service.should_use_file_upload("tiny", "chunks") is False
        assert service.should_use_file_upload("x" * (4 * 200_001)) is True

    def test_estimate_upload_time(self) -> None:
        assert estimate_upload_time("") == 2000
        assert estimate_upload_time("a" * (2 * 1024 * 1024)) == 4000
