"""
Model gateway.

Maps PromptParts (plus an optional screenshot) onto a chat request and
returns the raw text of the model's reply. Two providers are supported:

- ``openai``: any OpenAI-compatible chat-completions endpoint, via requests.
- ``bedrock``: Anthropic models on Amazon Bedrock, via boto3 ``invoke_model``.

No retries happen here; the orchestrator decides what a failed round means.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from config import Settings
from errors import ConfigurationError, GatewayError
from logging_utils import log
from prompts import PromptParts

BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"
TOP_P = 0.7


def build_messages(parts: PromptParts, image_base64: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Assemble the chat message list for a prompt.

    The system prompt comes first, then the context, error-context and
    recent-history blocks as further system entries, then one user entry with
    the current state. With a screenshot, the user entry becomes multi-part
    content carrying the image as a data URI.
    """
    messages: List[Dict[str, Any]] = [{"role": "system", "content": parts.system_prompt}]
    for block in (parts.context_prompt, parts.error_context_prompt, parts.recent_history_prompt):
        if block:
            messages.append({"role": "system", "content": block})

    if image_base64:
        user_content: Any = [
            {"type": "text", "text": parts.current_state_prompt},
            {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{image_base64}"}},
        ]
    else:
        user_content = parts.current_state_prompt
    messages.append({"role": "user", "content": user_content})
    return messages


def _content_text(content: Any, status_code: Optional[int] = None) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        if not all(isinstance(item, dict) for item in content):
            raise GatewayError("Model reply has malformed content blocks", status_code=status_code)
        return "".join(str(item.get("text", "")) for item in content if item.get("type") == "text")
    raise GatewayError("Model reply has no text content", status_code=status_code)


class LLMGateway:
    """Sends prompts to the configured model and returns its raw reply text."""

    def __init__(
        self,
        settings: Settings,
        http: Optional[requests.Session] = None,
        bedrock_client: Any = None,
    ) -> None:
        self.settings = settings
        self._http = http
        self._bedrock_client = bedrock_client

    def infer(self, parts: PromptParts, image_base64: Optional[str] = None) -> str:
        """
        Run one model round-trip.

        Raises:
            ConfigurationError: if the provider's endpoint, credential or model is missing.
            GatewayError: on a non-2xx status, a network failure or a malformed reply.
        """
        self.settings.require_llm()
        messages = build_messages(parts, image_base64)
        log("LLM", f"Calling {self.settings.llm_provider} model {self.settings.llm_model}"
                   + (" (with screenshot)" if image_base64 else ""))
        if self.settings.llm_provider == "bedrock":
            return self._infer_bedrock(messages)
        return self._infer_openai(messages)

    # ------------------------------------------------------------------ #
    # OpenAI-compatible endpoint
    # ------------------------------------------------------------------ #
    def _infer_openai(self, messages: List[Dict[str, Any]]) -> str:
        settings = self.settings
        body = {
            "model": settings.llm_model,
            "messages": messages,
            "temperature": settings.llm_temperature,
            "max_tokens": settings.llm_max_tokens,
            "top_p": TOP_P,
            "n": 1,
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {settings.llm_api_key}",
        }
        http = self._http or requests
        try:
            response = http.post(settings.llm_endpoint, json=body, headers=headers, timeout=settings.llm_timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            log("ERROR", f"Model endpoint did not respond: {exc}")
            raise GatewayError(f"No response from model endpoint: {exc}")
        except requests.RequestException as exc:
            log("ERROR", f"Model request failed: {exc}")
            raise GatewayError(f"Model request failed: {exc}")

        if not 200 <= response.status_code < 300:
            log("ERROR", f"Model endpoint returned {response.status_code}: {response.text[:500]}")
            raise GatewayError("Model endpoint returned an error", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Model endpoint returned invalid JSON", status_code=response.status_code)

        status = response.status_code
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise GatewayError("Invalid API response: no choices", status_code=status)
        if not isinstance(choices[0], dict) or not isinstance(choices[0].get("message"), dict):
            raise GatewayError("Invalid API response: malformed choice", status_code=status)
        return _content_text(choices[0]["message"].get("content"), status_code=status)

    # ------------------------------------------------------------------ #
    # Amazon Bedrock
    # ------------------------------------------------------------------ #
    def _bedrock(self):
        if self._bedrock_client is None:
            settings = self.settings
            try:
                self._bedrock_client = boto3.client(
                    service_name="bedrock-runtime",
                    region_name=settings.aws_region,
                    aws_access_key_id=settings.aws_access_key_id,
                    aws_secret_access_key=settings.aws_secret_access_key,
                )
            except BotoCoreError as exc:
                raise ConfigurationError(f"Cannot create Bedrock client: {exc}")
        return self._bedrock_client

    @staticmethod
    def _to_anthropic(messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        user = messages[-1]["content"]
        if isinstance(user, str):
            content: List[Dict[str, Any]] = [{"type": "text", "text": user}]
        else:
            content = []
            for item in user:
                if item["type"] == "text":
                    content.append({"type": "text", "text": item["text"]})
                elif item["type"] == "image_url":
                    data = item["image_url"]["url"].split(",", 1)[-1]
                    content.append(
                        {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": data}}
                    )
        return {"system": system, "messages": [{"role": "user", "content": content}]}

    def _infer_bedrock(self, messages: List[Dict[str, Any]]) -> str:
        settings = self.settings
        request_body = {
            "anthropic_version": BEDROCK_ANTHROPIC_VERSION,
            "max_tokens": settings.llm_max_tokens,
            "temperature": settings.llm_temperature,
            "top_p": TOP_P,
            **self._to_anthropic(messages),
        }
        try:
            response = self._bedrock().invoke_model(body=json.dumps(request_body), modelId=settings.llm_model)
        except NoCredentialsError as exc:
            raise ConfigurationError(f"AWS credentials are not configured: {exc}")
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            log("ERROR", f"Bedrock API error: {error_code}")
            raise GatewayError(f"Bedrock API error: {error_code or exc}", status_code=status)
        except BotoCoreError as exc:
            raise GatewayError(f"No response from Bedrock: {exc}")

        try:
            payload = json.loads(response["body"].read())
        except (KeyError, ValueError) as exc:
            raise GatewayError(f"Invalid Bedrock response: {exc}")
        blocks = payload.get("content") if isinstance(payload, dict) else None
        if not isinstance(blocks, list) or not blocks:
            raise GatewayError("Invalid Bedrock response: no content")
        return _content_text(blocks)
