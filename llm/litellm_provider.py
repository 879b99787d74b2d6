"""
LiteLLM-backed provider used for archive summaries.
"""

import logging
from typing import Dict, Any, List, Optional

import litellm
from opentelemetry import trace

from llm.provider_interface import LLMProvider, LLMMessage, LLMResponse
from host.observability import get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

_USAGE_FIELDS = ("prompt_tokens", "completion_tokens", "total_tokens")


def _field(obj: Any, name: str, default: Any = None) -> Any:
    # litellm returns ModelResponse objects; cached or proxied replies may be plain dicts
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class LiteLLMProvider(LLMProvider):
    """LiteLLM implementation of LLMProvider."""

    def __init__(self,
                 default_model: str = "gpt-4o-mini",
                 api_key: Optional[str] = None,
                 request_timeout: Optional[float] = None,
                 drop_params: bool = True):
        """
        Args:
            default_model: Model used when a call names none
            api_key: Passed with every request; LiteLLM falls back to the
                vendor's usual environment variable when None
            request_timeout: Seconds before a single completion is abandoned
            drop_params: Let LiteLLM drop arguments (such as ``response_format``)
                that the target model does not accept
        """
        self.default_model = default_model
        self.api_key = api_key
        self.request_timeout = request_timeout
        self.drop_params = drop_params
        logger.info(f"LiteLLM provider initialized with default model: {default_model}")

    def build_params(self,
                     messages: List[LLMMessage],
                     model: Optional[str] = None,
                     temperature: Optional[float] = None,
                     max_tokens: Optional[int] = None,
                     json_mode: bool = False,
                     **kwargs) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": model or self.default_model,
            "messages": [message.to_dict() for message in messages],
            "drop_params": self.drop_params,
        }
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if json_mode:
            params["response_format"] = {"type": "json_object"}
        if self.request_timeout:
            params["timeout"] = self.request_timeout
        if self.api_key:
            params["api_key"] = self.api_key
        params.update(kwargs)
        return params

    async def complete(self,
                       messages: List[LLMMessage],
                       model: Optional[str] = None,
                       temperature: Optional[float] = None,
                       max_tokens: Optional[int] = None,
                       json_mode: bool = False,
                       **kwargs) -> LLMResponse:
        params = self.build_params(messages, model, temperature, max_tokens, json_mode, **kwargs)
        model_to_use = params["model"]
        with tracer.start_as_current_span("litellm.complete", attributes={
            "llm.model": model_to_use,
            "llm.prompt.message_count": len(messages),
            "llm.json_mode": json_mode,
        }) as span:
            logger.debug(f"Requesting summary completion from {model_to_use}")
            try:
                raw_response = await litellm.acompletion(**params)
            except Exception as e:
                logger.error(f"LiteLLM completion with {model_to_use} failed: {e}")
                span.record_exception(e)
                span.set_status(trace.Status(trace.StatusCode.ERROR, f"LLM completion failed: {e}"))
                return LLMResponse.error(str(e), model=model_to_use)

            response = self.parse_response(raw_response)
            response.model = response.model or model_to_use
            for key, value in response.usage.items():
                span.set_attribute(f"llm.usage.{key}", value)
            span.set_attribute("llm.finish_reason", response.finish_reason or "unknown")
            if response.is_error:
                span.set_status(trace.Status(trace.StatusCode.ERROR, response.content or ""))
            return response

    def parse_response(self, raw_response: Any) -> LLMResponse:
        choices = _field(raw_response, "choices") or []
        if not choices:
            logger.error("LiteLLM reply has no choices")
            return LLMResponse.error("LLM reply contained no choices")

        choice = choices[0]
        content = _field(_field(choice, "message"), "content")
        usage_obj = _field(raw_response, "usage")
        usage = {}
        if usage_obj:
            usage = {name: int(_field(usage_obj, name, 0) or 0) for name in _USAGE_FIELDS}

        return LLMResponse(
            content=content,
            finish_reason=_field(choice, "finish_reason"),
            usage=usage,
            model=_field(raw_response, "model"),
        )
