from __future__ import annotations

import logging
import threading
from typing import Any

from dealflow.llm_client.base import LLMClient
from dealflow.pipeline.validate_output import sanitize_numeric_value, validate_schema
from dealflow.prompts.manager import PromptSet
from dealflow.utils.error_taxonomy import ValidationError
from dealflow.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

QUICK_CONTEXT_FIELDS: tuple[str, ...] = (
    "company_name",
    "sector",
    "solution_summary",
    "funding_stage",
    "funding_amount_eur",
    "team_size",
)
_NUMERIC_FIELDS = frozenset({"funding_amount_eur", "team_size"})


class QuickContextExtractor:
    """Single JSON-mode call that pulls headline facts from the OCR text."""

    def __init__(
        self,
        *,
        llm_client: LLMClient,
        prompt_set: PromptSet,
        model: str,
        retry_policy: RetryPolicy | None = None,
        max_chars: int = 10_000,
    ) -> None:
        self.llm_client = llm_client
        self.prompt_set = prompt_set
        self.model = model
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_chars = max_chars

    def extract(
        self,
        *,
        document_text: str,
        subject_id: str,
        cancelled: threading.Event | None = None,
    ) -> dict[str, Any]:
        user_content = self.prompt_set.render_user_prompt(
            document_text=document_text[: self.max_chars]
        )
        llm_result = self.retry_policy.execute(
            lambda: self.llm_client.generate_json(
                system_prompt=self.prompt_set.system_prompt_text,
                user_content=user_content,
                json_schema=self.prompt_set.schema,
                model=self.model,
                params={},
                run_meta={
                    "subject_id": subject_id,
                    "schema_name": self.prompt_set.meta.get("schema_name")
                    or self.prompt_set.prompt_name,
                },
            ),
            label="quick_context",
            cancelled=cancelled,
        )

        data = _normalize_quick_context(llm_result.parsed_json)
        schema_errors = validate_schema(parsed_json=data, schema=self.prompt_set.schema)
        if schema_errors:
            raise ValidationError(
                "Quick context failed validation: " + "; ".join(schema_errors),
                errors=schema_errors,
            )
        return data


def _normalize_quick_context(payload: dict[str, Any]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for name in QUICK_CONTEXT_FIELDS:
        value = payload.get(name)
        if name in _NUMERIC_FIELDS:
            value = sanitize_numeric_value(value)
            if name == "team_size" and isinstance(value, float) and value.is_integer():
                value = int(value)
        elif isinstance(value, str):
            value = value.strip() or None
        data[name] = value
    return data
