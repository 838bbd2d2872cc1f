from __future__ import annotations

import logging
from dataclasses import dataclass

from dealflow.alerting.webhook import WebhookAlertClient
from dealflow.auth import SubjectOwnershipAuthorizer
from dealflow.config.settings import Settings
from dealflow.llm_client.openai_client import OpenAIReasoningClient
from dealflow.ocr_client.mistral_ocr import MistralOCRClient
from dealflow.ocr_client.types import OCROptions
from dealflow.pipeline.conversation import ToolCallingConversationEngine
from dealflow.pipeline.failure import FailureHandler
from dealflow.pipeline.orchestrator import PipelineOrchestrator
from dealflow.pipeline.quick_context import QuickContextExtractor
from dealflow.prompts.manager import PromptManager
from dealflow.search_client.linkup import LinkupSearchClient
from dealflow.storage.repo import StorageRepo
from dealflow.streaming.emitter import EventStreamEmitter
from dealflow.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Runtime:
    repo: StorageRepo
    orchestrator: PipelineOrchestrator


def build_runtime(settings: Settings) -> Runtime:
    """Wire production collaborators. Raises ConfigurationError when a
    credential or the alert destination is missing."""
    settings.require_runtime_settings()
    config = settings.to_pipeline_config()
    retry_policy = RetryPolicy(config.retry)

    repo = StorageRepo(settings.resolved_sqlite_path)
    prompt_manager = PromptManager(settings.resolved_prompts_root)
    reasoning_client = OpenAIReasoningClient(api_key=settings.openai_api_key)

    quick_context_extractor = None
    if config.quick_context_enabled:
        quick_context_extractor = QuickContextExtractor(
            llm_client=reasoning_client,
            prompt_set=prompt_manager.load_prompt_set(
                prompt_name=config.quick_context_prompt_name,
                version=config.quick_context_prompt_version,
            ),
            model=config.quick_context_model,
            retry_policy=retry_policy,
            max_chars=config.quick_context_max_chars,
        )

    engine = ToolCallingConversationEngine(
        reasoning_client=reasoning_client,
        search_client=LinkupSearchClient(
            api_key=settings.linkup_api_key,
            base_url=settings.linkup_base_url,
            timeout_seconds=config.conversation.search_timeout_seconds,
        ),
        model=config.reasoning_model,
        params=dict(config.reasoning_params),
        retry_policy=retry_policy,
        search_timeout_seconds=config.conversation.search_timeout_seconds,
        progress_range=(
            config.milestones.conversation_start,
            config.milestones.conversation_complete,
        ),
        search_status_template=config.messages.searching,
    )

    orchestrator = PipelineOrchestrator(
        repo=repo,
        authorizer=SubjectOwnershipAuthorizer(repo),
        ocr_client=MistralOCRClient(
            api_key=settings.mistral_api_key,
            options=OCROptions(model=settings.ocr_model),
        ),
        conversation_engine=engine,
        failure_handler=FailureHandler(
            repo=repo,
            alert_client=WebhookAlertClient(
                webhook_url=settings.alert_webhook_url,
                token=settings.alert_webhook_token,
            ),
        ),
        prompt_manager=prompt_manager,
        quick_context_extractor=quick_context_extractor,
        config=config,
        retry_policy=retry_policy,
        emitter_factory=lambda: EventStreamEmitter(
            max_buffered_events=settings.stream_buffer_size
        ),
    )
    logger.info("Runtime ready (db=%s)", settings.resolved_sqlite_path)
    return Runtime(repo=repo, orchestrator=orchestrator)
