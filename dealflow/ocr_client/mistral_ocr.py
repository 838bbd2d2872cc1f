from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Any, Protocol

from dealflow.ocr_client.types import PAGE_SEPARATOR, OCROptions, OCRResult

logger = logging.getLogger(__name__)

_SUPPORTED_SUFFIXES = frozenset(
    {
        ".pdf",
        ".docx",
        ".pptx",
        ".png",
        ".jpg",
        ".jpeg",
        ".webp",
        ".tif",
        ".tiff",
    }
)


class OCRParseError(ValueError):
    """Raised when the OCR provider response cannot be parsed."""


class OCRProcessService(Protocol):
    def process(self, **kwargs: Any) -> Any: ...


class FileUploadService(Protocol):
    def upload(self, **kwargs: Any) -> Any: ...


class MistralOCRClient:
    """Pitch deck text extraction through Mistral OCR.

    Document problems (missing file, unsupported type, no readable pages)
    come back as an unsuccessful OCRResult. Provider and transport errors
    are raised so the caller's retry policy can classify them.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        options: OCROptions | None = None,
        process_service: OCRProcessService | None = None,
        upload_service: FileUploadService | None = None,
    ) -> None:
        self._api_key = api_key
        self._options = options or OCROptions()
        self._process_service = process_service
        self._upload_service = upload_service

    def extract_text(self, *, subject_id: str, document_path: str) -> OCRResult:
        input_path = Path(document_path)
        problem = _validate_supported_input(input_path)
        if problem is not None:
            logger.warning("OCR skipped for subject %s: %s", subject_id, problem)
            return OCRResult(success=False, error=problem, ocr_model=self._options.model)

        payload = self._request_ocr(input_path=input_path)
        pages = payload.get("pages")
        if not isinstance(pages, list):
            raise OCRParseError("OCR response missing pages list")

        page_markdowns = [
            str((page if isinstance(page, dict) else {}).get("markdown") or "")
            for page in pages
        ]
        extracted_text = PAGE_SEPARATOR.join(
            markdown for markdown in page_markdowns if markdown.strip()
        )
        ocr_model = str(payload.get("model") or self._options.model)

        if not extracted_text.strip():
            return OCRResult(
                success=False,
                pages_count=len(page_markdowns),
                ocr_model=ocr_model,
                error="OCR returned no readable text",
            )

        logger.info(
            "OCR extracted %d characters from %d pages",
            len(extracted_text),
            len(page_markdowns),
        )
        return OCRResult(
            success=True,
            extracted_text=extracted_text,
            pages_count=len(page_markdowns),
            ocr_model=ocr_model,
        )

    def _request_ocr(self, *, input_path: Path) -> dict[str, Any]:
        process_service, upload_service = self._resolve_services()
        uploaded_file_id = _upload_input_file(
            upload_service=upload_service, input_path=input_path
        )

        response = process_service.process(
            model=self._options.model,
            document={
                "type": "file",
                "file_id": uploaded_file_id,
            },
            include_image_base64=self._options.include_image_base64,
        )
        return _response_to_dict(response)

    def _resolve_services(self) -> tuple[OCRProcessService, FileUploadService]:
        if self._process_service is not None and self._upload_service is not None:
            return self._process_service, self._upload_service

        if self._api_key is None:
            raise ValueError(
                "Mistral API key is required when services are not provided"
            )

        try:
            from mistralai import Mistral
        except ImportError as error:
            raise RuntimeError("mistralai package is not installed") from error

        client = Mistral(api_key=self._api_key)
        self._process_service = client.ocr
        self._upload_service = client.files
        return self._process_service, self._upload_service


def _upload_input_file(*, upload_service: FileUploadService, input_path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(input_path.name)
    with input_path.open("rb") as content_stream:
        response = upload_service.upload(
            file={
                "file_name": input_path.name,
                "content": content_stream,
                "content_type": mime_type,
            },
            purpose="ocr",
        )

    payload = _response_to_dict(response)
    file_id = payload.get("id")
    if not isinstance(file_id, str) or not file_id:
        raise OCRParseError("File upload response missing id")
    return file_id


def _response_to_dict(response: Any) -> dict[str, Any]:
    if isinstance(response, dict):
        return response

    model_dump = getattr(response, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    raise OCRParseError("Unsupported response type")


def _validate_supported_input(input_path: Path) -> str | None:
    if not input_path.is_file():
        return f"Document not found: {input_path.name}"

    suffix = input_path.suffix.lower()
    if suffix not in _SUPPORTED_SUFFIXES:
        return (
            f"Unsupported file type for OCR: {input_path.name} "
            f"({suffix or 'no extension'})"
        )
    return None
