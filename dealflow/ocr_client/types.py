from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

PAGE_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True, slots=True)
class OCROptions:
    model: str = "mistral-ocr-latest"
    include_image_base64: bool = False


@dataclass(frozen=True, slots=True)
class OCRResult:
    success: bool
    extracted_text: str = ""
    pages_count: int = 0
    ocr_model: str | None = None
    error: str | None = None


class OCRClient(Protocol):
    def extract_text(self, *, subject_id: str, document_path: str) -> OCRResult: ...
