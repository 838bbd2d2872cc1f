from __future__ import annotations

from pathlib import Path

import pytest

from dealflow.ocr_client.mistral_ocr import MistralOCRClient, OCRParseError
from dealflow.ocr_client.types import PAGE_SEPARATOR, OCROptions


class FakeUploadService:
    def __init__(self) -> None:
        self.calls: list[dict[str, object]] = []

    def upload(self, **kwargs: object) -> dict[str, object]:
        self.calls.append(kwargs)
        return {"id": "file-123"}


class FakeProcessService:
    def __init__(self, response: dict[str, object] | Exception) -> None:
        self.response = response
        self.calls: list[dict[str, object]] = []

    def process(self, **kwargs: object) -> dict[str, object]:
        self.calls.append(kwargs)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response


def _deck(tmp_path: Path, name: str = "deck.pdf") -> Path:
    path = tmp_path / name
    path.write_bytes(b"%PDF-1.7 fake")
    return path


def _client(process: FakeProcessService, upload: FakeUploadService) -> MistralOCRClient:
    return MistralOCRClient(
        options=OCROptions(model="mistral-ocr-latest"),
        process_service=process,
        upload_service=upload,
    )


def test_extract_text_joins_page_markdown(tmp_path: Path) -> None:
    upload = FakeUploadService()
    process = FakeProcessService(
        {
            "model": "mistral-ocr-2505",
            "pages": [
                {"index": 0, "markdown": "# Acme Robotics\nSeed round"},
                {"index": 1, "markdown": "   "},
                {"index": 2, "markdown": "Team of 12"},
            ],
        }
    )

    result = _client(process, upload).extract_text(
        subject_id="subject-1", document_path=str(_deck(tmp_path))
    )

    assert result.success is True
    assert result.extracted_text == (
        "# Acme Robotics\nSeed round" + PAGE_SEPARATOR + "Team of 12"
    )
    assert result.pages_count == 3
    assert result.ocr_model == "mistral-ocr-2505"

    upload_call = upload.calls[0]
    assert upload_call["purpose"] == "ocr"
    assert upload_call["file"]["file_name"] == "deck.pdf"  # type: ignore[index]
    assert upload_call["file"]["content_type"] == "application/pdf"  # type: ignore[index]
    assert process.calls == [
        {
            "model": "mistral-ocr-latest",
            "document": {"type": "file", "file_id": "file-123"},
            "include_image_base64": False,
        }
    ]


def test_empty_ocr_output_is_unsuccessful(tmp_path: Path) -> None:
    process = FakeProcessService({"pages": [{"markdown": ""}, {"markdown": "\n"}]})

    result = _client(process, FakeUploadService()).extract_text(
        subject_id="subject-1", document_path=str(_deck(tmp_path))
    )

    assert result.success is False
    assert result.error == "OCR returned no readable text"
    assert result.pages_count == 2


def test_missing_and_unsupported_documents_skip_the_provider(tmp_path: Path) -> None:
    process = FakeProcessService({"pages": []})
    upload = FakeUploadService()
    client = _client(process, upload)
    notes = tmp_path / "notes.txt"
    notes.write_text("hello", encoding="utf-8")

    missing = client.extract_text(
        subject_id="subject-1", document_path=str(tmp_path / "absent.pdf")
    )
    unsupported = client.extract_text(subject_id="subject-1", document_path=str(notes))

    assert missing.success is False
    assert "Document not found" in (missing.error or "")
    assert unsupported.success is False
    assert "Unsupported file type" in (unsupported.error or "")
    assert process.calls == []
    assert upload.calls == []


def test_malformed_response_raises_parse_error(tmp_path: Path) -> None:
    process = FakeProcessService({"model": "mistral-ocr-latest"})

    with pytest.raises(OCRParseError):
        _client(process, FakeUploadService()).extract_text(
            subject_id="subject-1", document_path=str(_deck(tmp_path))
        )


def test_provider_errors_propagate_for_retry(tmp_path: Path) -> None:
    process = FakeProcessService(ConnectionError("provider unreachable"))

    with pytest.raises(ConnectionError):
        _client(process, FakeUploadService()).extract_text(
            subject_id="subject-1", document_path=str(_deck(tmp_path))
        )
