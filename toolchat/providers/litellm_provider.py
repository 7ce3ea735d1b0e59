"""LiteLLM provider implementation for multi-provider support."""

import asyncio
import base64
import json
import logging
from typing import Any, Sequence

import json_repair
import litellm
from litellm import acompletion

from toolchat.context.message import ChatMessage, MessageRole, UsageMetadata
from toolchat.context.parts import (
    BlobPart,
    CodeExecutionResultPart,
    ExecutableCodePart,
    FunctionCallPart,
    FunctionResponsePart,
    Part,
    TextPart,
)
from toolchat.errors import FatalApiError, TransientApiError
from toolchat.logging import get_logger, mask_secret
from toolchat.providers.base import GenerationConfig, LLMProvider, LLMResponse, is_transient

logger = get_logger("toolchat.providers.litellm")


# Standard OpenAI chat-completion message keys; anything else is stripped for strict providers.
_ALLOWED_MSG_KEYS = frozenset({"role", "content", "tool_calls", "tool_call_id", "name"})

_EMPTY_USER_CONTENT = "(empty)"


class LiteLLMProvider(LLMProvider):
    """
    LLM provider using LiteLLM for multi-provider support.

    Converts chat messages to the OpenAI chat-completion format, and the
    completion back into parts. The API key is passed per request so the
    caller can rotate credentials between attempts.
    """

    def __init__(
        self,
        api_base: str | None = None,
        timeout_s: float | None = 120.0,
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_base)
        self.timeout_s = timeout_s
        self.extra_headers = extra_headers or {}

        # Disable LiteLLM logging noise
        litellm.suppress_debug_info = True
        # Drop unsupported parameters for providers instead of failing the call
        litellm.drop_params = True

    # -- request conversion ----------------------------------------------

    @staticmethod
    def _blob_content(part: BlobPart) -> dict[str, Any]:
        encoded = base64.b64encode(part.data).decode("ascii")
        data_uri = f"data:{part.mime_type};base64,{encoded}"
        if part.mime_type.startswith("image/"):
            return {"type": "image_url", "image_url": {"url": data_uri}}
        return {"type": "file", "file": {"file_data": data_uri, "filename": part.display_name or "attachment"}}

    @staticmethod
    def _part_text(part: Part) -> str | None:
        if isinstance(part, TextPart):
            return part.text
        if isinstance(part, ExecutableCodePart):
            return f"```{part.language}\n{part.code}\n```"
        if isinstance(part, CodeExecutionResultPart):
            return f"Code execution result ({part.outcome}):\n{part.output}"
        return None

    @classmethod
    def _to_openai_messages(cls, contents: Sequence[ChatMessage]) -> list[dict[str, Any]]:
        answered = {
            p.id or p.name
            for m in contents
            if m.role is MessageRole.TOOL
            for p in m.parts
            if isinstance(p, FunctionResponsePart)
        }
        messages: list[dict[str, Any]] = []
        for message in contents:
            if message.role is MessageRole.TOOL:
                for part in message.parts:
                    if isinstance(part, FunctionResponsePart):
                        messages.append({
                            "role": "tool",
                            "tool_call_id": part.id or part.name,
                            "name": part.name,
                            "content": json.dumps(part.response, ensure_ascii=False, default=str),
                        })
                continue

            if message.role is MessageRole.MODEL:
                texts = [t for t in (cls._part_text(p) for p in message.parts) if t]
                # OpenAI-style backends reject tool_calls without a matching tool message
                calls = [c for c in message.function_calls if (c.id or c.name) in answered]
                texts.extend(
                    f"(Proposed call {c.name} id={c.id or 'N/A'} was not executed.)"
                    for c in message.function_calls
                    if (c.id or c.name) not in answered
                )
                msg: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts) or None}
                if calls:
                    msg["tool_calls"] = [
                        {
                            "id": call.id or call.name,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.args},
                        }
                        for call in calls
                    ]
                messages.append(msg)
                continue

            blocks: list[dict[str, Any]] = []
            for part in message.parts:
                if isinstance(part, BlobPart):
                    blocks.append(cls._blob_content(part))
                else:
                    text = cls._part_text(part)
                    if text is not None:
                        blocks.append({"type": "text", "text": text})
            if all(b["type"] == "text" for b in blocks):
                messages.append({"role": "user", "content": "\n".join(b["text"] for b in blocks)})
            else:
                messages.append({"role": "user", "content": blocks})
        return messages

    @classmethod
    def _build_messages(cls, contents: Sequence[ChatMessage], system_instruction: str | None) -> list[dict[str, Any]]:
        messages = cls._sanitize_empty_content(cls._to_openai_messages(contents))
        if system_instruction:
            messages.insert(0, {"role": "system", "content": system_instruction})
        return cls._sanitize_messages(messages)

    @staticmethod
    def _sanitize_empty_content(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Some providers reject empty user content; substitute a placeholder."""
        out = []
        for msg in messages:
            if msg.get("role") == "user" and not msg.get("content"):
                msg = {**msg, "content": _EMPTY_USER_CONTENT}
            out.append(msg)
        return out

    @staticmethod
    def _sanitize_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Strip non-standard keys and ensure assistant messages have a content key."""
        sanitized = []
        for msg in messages:
            clean = {k: v for k, v in msg.items() if k in _ALLOWED_MSG_KEYS}
            # Strict providers require "content" even when assistant only has tool_calls
            if clean.get("role") == "assistant" and "content" not in clean:
                clean["content"] = None
            # Ensure tool_calls arguments are JSON strings, not dicts
            if clean.get("tool_calls"):
                fixed_calls = []
                for tc in clean["tool_calls"]:
                    tc = dict(tc)
                    if "function" in tc:
                        fn = dict(tc["function"])
                        if isinstance(fn.get("arguments"), dict):
                            fn["arguments"] = json.dumps(fn["arguments"], ensure_ascii=False)
                        tc["function"] = fn
                    fixed_calls.append(tc)
                clean["tool_calls"] = fixed_calls
            sanitized.append(clean)
        return sanitized

    # -- response conversion ---------------------------------------------

    @staticmethod
    def _value(obj: Any, key: str, default: Any = None) -> Any:
        if isinstance(obj, dict):
            return obj.get(key, default)
        return getattr(obj, key, default)

    @classmethod
    def _extract_tool_calls_from_message(cls, message: Any) -> list[FunctionCallPart]:
        tool_calls: list[FunctionCallPart] = []
        raw_tool_calls = cls._value(message, "tool_calls") or []
        for tc in raw_tool_calls:
            fn = cls._value(tc, "function") or {}
            name = cls._value(fn, "name")
            if not isinstance(name, str) or not name:
                continue
            args_raw = cls._value(fn, "arguments")
            if isinstance(args_raw, str):
                try:
                    arguments = json_repair.loads(args_raw)
                except Exception:
                    arguments = {}
            elif isinstance(args_raw, dict):
                arguments = args_raw
            else:
                arguments = {}
            if not isinstance(arguments, dict):
                arguments = {}
            call_id = cls._value(tc, "id")
            tool_calls.append(FunctionCallPart(
                name=name,
                args=arguments,
                id=str(call_id) if call_id else None,
            ))
        return tool_calls

    @classmethod
    def _parse_usage(cls, usage: Any) -> UsageMetadata | None:
        if not usage:
            return None
        prompt_details = cls._value(usage, "prompt_tokens_details")
        completion_details = cls._value(usage, "completion_tokens_details")
        return UsageMetadata(
            prompt_token_count=cls._value(usage, "prompt_tokens"),
            candidates_token_count=cls._value(usage, "completion_tokens"),
            cached_content_token_count=cls._value(prompt_details, "cached_tokens") if prompt_details else None,
            thoughts_token_count=cls._value(completion_details, "reasoning_tokens") if completion_details else None,
            total_token_count=cls._value(usage, "total_tokens"),
        )

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse LiteLLM response into our standard format."""
        usage = self._parse_usage(self._value(response, "usage"))
        choices = self._value(response, "choices") or []
        if not choices:
            return LLMResponse(content=None, usage=usage, finish_reason="no_candidates")

        choice = choices[0]
        message = self._value(choice, "message")
        parts: list[Part] = []
        text = self._value(message, "content") if message is not None else None
        if isinstance(text, str) and text:
            parts.append(TextPart(text))
        if message is not None:
            parts.extend(self._extract_tool_calls_from_message(message))

        grounding = self._value(message, "annotations") if message is not None else None
        return LLMResponse(
            content=parts or None,
            usage=usage,
            grounding={"annotations": grounding} if grounding else None,
            finish_reason=self._value(choice, "finish_reason") or "stop",
            model=self._value(response, "model"),
        )

    # -- call ------------------------------------------------------------

    async def generate(
        self,
        contents: Sequence[ChatMessage],
        config: GenerationConfig,
        api_key: str,
    ) -> LLMResponse:
        """
        Send a chat completion request via LiteLLM.

        Raises:
            TransientApiError: Rate limit, overload or timeout.
            FatalApiError: Any other failure.
        """
        kwargs: dict[str, Any] = {
            "model": config.model,
            "messages": self._build_messages(contents, config.system_instruction),
            "max_tokens": max(1, config.max_output_tokens),
            "temperature": config.temperature,
            "api_key": api_key,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers
        if config.tools:
            kwargs["tools"] = config.tools
            kwargs["tool_choice"] = "auto"
        if self.timeout_s:
            kwargs["request_timeout"] = self.timeout_s

        if logging.getLogger("toolchat").isEnabledFor(logging.DEBUG):
            logger.debug(
                "litellm_request",
                model=config.model,
                messages=len(kwargs["messages"]),
                tools=len(config.tools),
            )

        try:
            coro = acompletion(**kwargs)
            if self.timeout_s:
                # safety net on top of LiteLLM's own request timeout
                response = await asyncio.wait_for(coro, timeout=self.timeout_s + 30)
            else:
                response = await coro
        except asyncio.TimeoutError as e:
            logger.error("llm_call_timeout", model=config.model)
            raise TransientApiError("request timed out", status_code=408) from e
        except Exception as e:
            error_msg = str(e)
            # Mask the API key if it leaked into the exception message
            if api_key and api_key in error_msg:
                error_msg = error_msg.replace(api_key, mask_secret(api_key))
            status = getattr(e, "status_code", None)
            logger.error("llm_call_failed", model=config.model, error=error_msg, status_code=status)
            if is_transient(e):
                raise TransientApiError(error_msg, status_code=status) from e
            raise FatalApiError(error_msg, cause=e) from e

        return self._parse_response(response)
