"""Summarization module supporting OpenAI, Anthropic Claude and Amazon Bedrock."""

import json
import time

import boto3
from anthropic import Anthropic, AnthropicError
from botocore.exceptions import BotoCoreError, ClientError
from openai import OpenAI, OpenAIError

from .config import DEFAULT_SYSTEM_PROMPT, LLMConfig
from .exceptions import SummarizationError
from .logging_config import create_execution_logger

NO_CONTENT_SENTINEL = "No content to summarize."
MAX_CONTENT_CHARS = 8000


class Summarizer:
    """Summarizes article text with the provider named in an LLMConfig.

    The configuration is injected per instance, so two summarizers with
    different providers or models can coexist in one process.
    """

    def __init__(self, config: LLMConfig, execution_id: str | None = None):
        config.validate()
        self.config = config
        self.logger = create_execution_logger("summarizer", execution_id)
        self.client = self._create_client()
        self.logger.info(
            "Summarizer initialized",
            provider=config.provider,
            model=config.model_id,
            max_tokens=config.max_tokens,
        )

    def _create_client(self):
        if self.config.provider == "openai":
            return OpenAI(api_key=self.config.api_key)
        if self.config.provider == "claude":
            return Anthropic(api_key=self.config.api_key)
        return boto3.client("bedrock-runtime", region_name=self.config.region)

    def summarize(self, content: str, prompt: str = DEFAULT_SYSTEM_PROMPT) -> str:
        """Summarize ``content`` using ``prompt`` as the system prompt.

        Empty or whitespace-only content returns NO_CONTENT_SENTINEL without
        calling the API.

        Raises:
            SummarizationError: If the API call fails or returns no text
        """
        if not content or not content.strip():
            return NO_CONTENT_SENTINEL

        user_message = (
            "Please summarize the following content:\n\n"
            f"{content[:MAX_CONTENT_CHARS]}"
        )
        system_prompt = prompt or DEFAULT_SYSTEM_PROMPT

        start_time = time.time()
        try:
            if self.config.provider == "openai":
                text = self._summarize_openai(system_prompt, user_message)
            elif self.config.provider == "claude":
                text = self._summarize_claude(system_prompt, user_message)
            else:
                text = self._summarize_bedrock(system_prompt, user_message)
        except (OpenAIError, AnthropicError) as e:
            raise SummarizationError(f"Failed to summarize content: {e}") from e
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            raise SummarizationError(
                f"Failed to summarize content: Bedrock error {error_code}"
            ) from e
        except BotoCoreError as e:
            raise SummarizationError(f"Failed to summarize content: {e}") from e

        if not text or not text.strip():
            raise SummarizationError(
                f"Empty response from {self.config.provider} model {self.config.model_id}"
            )

        self.logger.debug(
            "Summary generated",
            provider=self.config.provider,
            response_length=len(text),
            response_time_ms=int((time.time() - start_time) * 1000),
        )
        return text.strip()

    def summarize_batch(
        self, contents: list[str], prompt: str = DEFAULT_SYSTEM_PROMPT
    ) -> list[str]:
        """Summarize several texts in order; the first failure propagates."""
        return [self.summarize(content, prompt) for content in contents]

    def _summarize_openai(self, system_prompt: str, user_message: str) -> str | None:
        response = self.client.chat.completions.create(
            model=self.config.model_id,
            max_tokens=self.config.max_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        )
        if not response.choices:
            return None
        return response.choices[0].message.content

    def _summarize_claude(self, system_prompt: str, user_message: str) -> str | None:
        response = self.client.messages.create(
            model=self.config.model_id,
            max_tokens=self.config.max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_message}],
        )
        for block in response.content:
            if getattr(block, "type", None) == "text":
                return block.text
        return None

    def _summarize_bedrock(self, system_prompt: str, user_message: str) -> str | None:
        model_id = self.config.model_id
        is_llama = "llama" in model_id.lower()

        if is_llama:
            # Llama: legacy prompt format with chat template tags
            request_body = {
                "prompt": self._format_llama_prompt(system_prompt, user_message),
                "max_gen_len": self.config.max_tokens,
                "temperature": 0.3,
                "top_p": 0.9,
            }
        else:
            # Nova / Mistral: messages + inferenceConfig
            request_body = {
                "system": [{"text": system_prompt}],
                "messages": [{"role": "user", "content": [{"text": user_message}]}],
                "inferenceConfig": {
                    "maxTokens": self.config.max_tokens,
                    "temperature": 0.3,
                },
            }

        response = self.client.invoke_model(
            modelId=model_id,
            body=json.dumps(request_body),
            contentType="application/json",
            accept="application/json",
        )
        response_body = json.loads(response["body"].read())

        if is_llama:
            return response_body.get("generation")

        message = response_body.get("output", {}).get("message", {})
        content = message.get("content") or []
        if content:
            return content[0].get("text", "")
        self.logger.error(
            f"Bedrock response missing output/message. Available: {list(response_body.keys())}"
        )
        return None

    def _format_llama_prompt(self, system_prompt: str, user_message: str) -> str:
        return (
            "<|begin_of_text|><|start_header_id|>system<|end_header_id|>\n\n"
            f"{system_prompt}<|eot_id|><|start_header_id|>user<|end_header_id|>\n\n"
            f"{user_message}<|eot_id|><|start_header_id|>assistant<|end_header_id|>\n\n"
        )
