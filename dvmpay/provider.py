"""
Language-model backends behind one interface: generate() and stream().

- nip90:  send the prompt as a job to the marketplace (JobConsumer)
- openai: any OpenAI-compatible chat-completions endpoint

Env for openai: OPENAI_API_KEY (or DVMPAY_LLM_API_KEY), OPENAI_BASE_URL,
DVMPAY_LLM_MODEL (default gpt-4o-mini).
"""

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, Optional

import requests

from dvmpay.config import ConsumerConfig
from dvmpay.errors import JobFailedError
from dvmpay.flow import JobConsumer, request_job
from dvmpay.schema import UpdateKind


class AgentLanguageModel(ABC):
    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """Full reply for a prompt."""

    @abstractmethod
    def stream(self, prompt: str) -> AsyncIterator[str]:
        """Reply text in chunks, as it becomes available."""


class Nip90LanguageModel(AgentLanguageModel):
    """Each prompt becomes a text job (kind 5050 by default) on the marketplace."""

    def __init__(
        self,
        consumer: JobConsumer,
        target_provider: Optional[str] = None,
        timeout: Optional[float] = 120.0,
        **job_options: Any,
    ):
        self.consumer = consumer
        self.target_provider = target_provider
        self.timeout = timeout
        self.job_options = job_options

    async def generate(self, prompt: str) -> str:
        output = await request_job(
            self.consumer,
            prompt,
            target_provider=self.target_provider,
            timeout=self.timeout,
            **self.job_options,
        )
        return output or ""

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        session = await self.consumer.submit(
            prompt=prompt, target_provider=self.target_provider, **self.job_options
        )
        got_output = False
        async for update in session.stream():
            if update.kind in (UpdateKind.PARTIAL, UpdateKind.OUTPUT):
                got_output = True
                yield update.message
        if session.error and not got_output:
            raise JobFailedError(session.error)


class OpenAICompatibleModel(AgentLanguageModel):
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 1024,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY") or os.getenv("DVMPAY_LLM_API_KEY")
        self.base_url = (base_url or os.getenv("OPENAI_BASE_URL") or "").strip() or "https://api.openai.com/v1"
        self.model = model or os.getenv("DVMPAY_LLM_MODEL", "gpt-4o-mini")
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._session = session or requests.Session()

    async def generate(self, prompt: str) -> str:
        return await asyncio.to_thread(self.complete, prompt)

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        # chat-completions without SSE: the whole reply arrives as one chunk
        yield await self.generate(prompt)

    def complete(self, prompt: str) -> str:
        if not self.api_key:
            raise RuntimeError("No OPENAI_API_KEY or DVMPAY_LLM_API_KEY set.")
        url = f"{self.base_url.rstrip('/')}/chat/completions"
        try:
            r = self._session.post(
                url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                    "max_tokens": self.max_tokens,
                },
                timeout=self.timeout,
            )
            r.raise_for_status()
            data: Dict[str, Any] = r.json()
        except (requests.RequestException, ValueError) as e:
            raise JobFailedError(f"LLM call failed: {e}") from e
        content = (data.get("choices") or [{}])[0].get("message", {}).get("content", "")
        if not isinstance(content, str) or not content.strip():
            raise JobFailedError("Empty LLM response.")
        return content.strip()


def get_language_model(name: Optional[str] = None, **kwargs: Any) -> AgentLanguageModel:
    """
    Single entry point: returns a language model backend by name.

    Args:
        name: "nip90" (needs consumer=JobConsumer) or "openai".
              Default: DVMPAY_LANGUAGE_MODEL (nip90).
    """
    name = name or ConsumerConfig.from_env().language_model
    if name == "nip90":
        consumer = kwargs.pop("consumer", None)
        if consumer is None:
            raise ValueError("nip90 language model needs consumer=JobConsumer(...)")
        return Nip90LanguageModel(consumer, **kwargs)
    if name == "openai":
        return OpenAICompatibleModel(**kwargs)
    raise ValueError(f"Unknown language model: {name!r}. Use 'nip90' or 'openai'.")
