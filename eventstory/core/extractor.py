"""
Language Model Story Extraction Engine

This module connects the interview to a language model. After each answer the
whole conversation is sent to the model, which extracts checklist values and
composes the event narrative; when the user edits the narrative by hand, the
edited text is sent instead and every field is re-extracted. The raw reply
is then handed to the validation layer, which repairs, parses and vets it.

Supported LLM Providers:
- Google Gemini: cloud models via the google-genai client
- Ollama: local models for privacy-sensitive or offline use

Error Handling:
- Transient failures (rate limits, overload, network errors) are retried
  with a short fixed backoff before anything reaches the parser
- Any remaining model error is reported in the result's `error` field; the
  interview never sees an exception from this module
"""

import logging
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

import ollama
from google import genai

from .models import ChecklistItem, ConversationEntry, FieldSchema, ModelResponse, StoryAnalysisResult
from .checklist import default_field_schema
from .prompter import build_system_prompt, build_text_analysis_prompt, build_user_message
from .validator import parse_analysis_response, parse_text_analysis_response

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 2
RETRY_DELAYS = (1.5, 3.0)  # seconds
DEFAULT_MAX_TOKENS = 4096

_TRANSIENT_ERROR_RE = re.compile(
    r"\b(429|529|overloaded|rate.?limit|network|fetch|ECONNREFUSED|ECONNRESET|ETIMEDOUT)\b",
    re.IGNORECASE,
)


def is_transient_error(err: BaseException) -> bool:
    """Rate limits, overloaded servers and network failures are worth retrying."""
    if isinstance(err, (ConnectionError, TimeoutError)):
        return True
    return bool(_TRANSIENT_ERROR_RE.search(str(err)))


def call_with_retry(fn: Callable[[], T], sleep: Optional[Callable[[float], None]] = None) -> T:
    """
    Call `fn`, retrying up to MAX_RETRIES times on transient errors.

    Non-transient errors, and the last transient one, propagate unchanged.
    """
    sleep = sleep or time.sleep
    for attempt in range(MAX_RETRIES + 1):
        try:
            return fn()
        except Exception as e:
            if attempt < MAX_RETRIES and is_transient_error(e):
                delay = RETRY_DELAYS[attempt]
                logger.warning(
                    "Transient error, retrying in %.1fs (attempt %d/%d): %s",
                    delay, attempt + 1, MAX_RETRIES, e,
                )
                sleep(delay)
                continue
            raise


class Extractor:
    """
    LLM-based checklist extraction and narrative composition.

    Builds prompts from the checklist, calls the configured provider with
    retries, and validates the reply against the field schema.
    """
    def __init__(self, llm_config: Dict[str, Any], schema: Optional[FieldSchema] = None,
                 product_context: Optional[str] = None):
        """
        Args:
            llm_config: Provider settings (see eventstory.config.DEFAULT_LLM_CONFIG)
            schema: Allowed values per field; the bundled checklist's when omitted
            product_context: Optional product-specific text appended to prompts
        """
        self.llm_config = llm_config
        self.schema = schema or default_field_schema()
        self.product_context = product_context
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self._usage_lock = threading.Lock()

    def analyze_conversation(
        self, conversation: List[ConversationEntry], checklist: List[ChecklistItem]
    ) -> StoryAnalysisResult:
        """
        Extract values for unconfirmed fields and compose the narrative.

        Returns an empty result for an empty conversation. Model errors are
        returned in `error`, never raised.
        """
        if not conversation:
            return StoryAnalysisResult()

        try:
            response = call_with_retry(lambda: self.call_model(
                build_system_prompt(checklist, self.schema, self.product_context),
                build_user_message(conversation),
            ))
        except Exception as e:
            logger.warning("LLM analysis failed: %s", e)
            return StoryAnalysisResult(error=str(e) or type(e).__name__)

        return parse_analysis_response(response.raw_text, checklist, self.schema)

    def analyze_text(self, text: str, checklist: List[ChecklistItem]) -> StoryAnalysisResult:
        """
        Re-extract every field from a hand-edited narrative.

        Unlike analyze_conversation, already confirmed fields are eligible,
        because the user may have changed that information in the text.
        """
        if not text.strip():
            return StoryAnalysisResult()

        try:
            response = call_with_retry(lambda: self.call_model(
                build_text_analysis_prompt(checklist, self.schema, self.product_context),
                text,
            ))
        except Exception as e:
            logger.warning("Text analysis failed: %s", e)
            return StoryAnalysisResult(error=str(e) or type(e).__name__)

        return parse_text_analysis_response(response.raw_text, checklist, self.schema)

    def call_model(self, system_prompt: str, user_prompt: str, max_tokens: Optional[int] = None) -> ModelResponse:
        """
        Route a model call to the configured provider.

        Raises:
            ValueError: for an unknown provider
            Exception: provider errors propagate to the retry wrapper
        """
        max_tokens = max_tokens or self.llm_config.get("max_tokens", DEFAULT_MAX_TOKENS)
        provider = self.llm_config.get("provider")
        if provider == "Google Gemini":
            response = self._call_gemini(system_prompt, user_prompt, max_tokens)
        elif provider == "Ollama":
            response = self._call_ollama(system_prompt, user_prompt, max_tokens)
        else:
            raise ValueError(f"Unknown LLM provider: {provider}")

        with self._usage_lock:
            self.total_input_tokens += response.input_tokens
            self.total_output_tokens += response.output_tokens
        return response

    def _call_gemini(self, system_prompt: str, user_prompt: str, max_tokens: int) -> ModelResponse:
        """Generate with a Gemini model; token counts come from usage metadata."""
        client = genai.Client(api_key=self.llm_config["api_key"])

        response = client.models.generate_content(
            model=self.llm_config["model"],
            contents=user_prompt,
            config={
                "system_instruction": system_prompt,
                "response_mime_type": "application/json",
                "max_output_tokens": max_tokens,
                "temperature": self.llm_config.get("temperature", 0.3),
            },
        )

        usage = response.usage_metadata
        return ModelResponse(
            raw_text=response.text or "",
            input_tokens=(usage.prompt_token_count or 0) if usage else 0,
            output_tokens=(usage.candidates_token_count or 0) if usage else 0,
        )

    def _call_ollama(self, system_prompt: str, user_prompt: str, max_tokens: int) -> ModelResponse:
        """
        Generate with a local Ollama model.

        JSON output is requested via `format="json"`, but the reply still goes
        through the full repair pipeline since smaller models do not always
        honour it.
        """
        client = ollama.Client(host=self.llm_config["ollama_url"])

        response = client.chat(
            model=self.llm_config["model"],
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            format="json",
            options={
                "temperature": self.llm_config.get("temperature", 0.3),
                "num_predict": max_tokens,
            },
        )

        return ModelResponse(
            raw_text=response['message']['content'] or "",
            input_tokens=response.get('prompt_eval_count') or 0,
            output_tokens=response.get('eval_count') or 0,
        )
