import json
import logging
import httpx
import time
import random
from dataclasses import dataclass
from typing import Generator, List, Dict, Any, Optional

from ragchat.config.settings import LLMConfig
from ragchat.core.errors import GenerationError
from ragchat.models.query import ChatMessage

logger = logging.getLogger(__name__)

LIMIT_FINISH_REASONS = {"length", "max_tokens"}


def is_limit_reason(finish_reason: Optional[str]) -> bool:
    """True when the model stopped because it ran out of output tokens."""
    if not finish_reason:
        return False
    return finish_reason.lower() in LIMIT_FINISH_REASONS or "MAX" in finish_reason.upper()


@dataclass
class GenerationChunk:
    delta: str = ""
    finish_reason: Optional[str] = None


class LLMClient:
    """
    OpenRouter (OpenAI-compatible) chat completions client.
    Supports streaming, 429 backoff and model fallback. Retries and fallback only
    happen before the first token reaches the caller; a stream that breaks midway
    is reported, never replayed.
    """

    def __init__(self, config: LLMConfig, api_key: str = "", max_retries: int = 3, base_delay: float = 2.0):
        self.api_key = api_key
        self.config = config
        self.base_url = f"{self.config.base_url.rstrip('/')}/chat/completions"
        self.headers = {
            "Authorization": f"Bearer {self.api_key}" if self.api_key else "",
            "X-Title": "ragchat",
            "Content-Type": "application/json"
        }
        self.max_retries = max_retries
        self.base_delay = base_delay

    def _payload(self,
                 messages: List[ChatMessage],
                 max_tokens: Optional[int],
                 temperature: Optional[float],
                 stream: bool) -> Dict[str, Any]:
        if not self.api_key:
            logger.warning("OPENROUTER_API_KEY is not set. LLM calls will fail.")
        return {
            "model": self.config.model,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": max_tokens or self.config.max_tokens,
            "temperature": self.config.temperature if temperature is None else temperature,
            "stream": stream
        }

    def generate(self,
                 messages: List[ChatMessage],
                 max_tokens: Optional[int] = None,
                 temperature: Optional[float] = None) -> GenerationChunk:
        """Non-streaming call. Returns the whole answer as a single chunk."""
        payload = self._payload(messages, max_tokens, temperature, stream=False)
        try:
            return self._sync_response(payload)
        except Exception as e:
            if self.config.fallback_model and payload["model"] != self.config.fallback_model:
                logger.warning(f"Primary model {payload['model']} failed: {e}. Trying fallback.")
                payload["model"] = self.config.fallback_model
                try:
                    return self._sync_response(payload)
                except Exception as fallback_error:
                    raise GenerationError(str(fallback_error)) from fallback_error
            raise GenerationError(str(e)) from e

    def stream_chat(self,
                    messages: List[ChatMessage],
                    max_tokens: Optional[int] = None,
                    temperature: Optional[float] = None) -> Generator[GenerationChunk, None, None]:
        """Yields text deltas as they arrive; the last chunk carries the finish reason."""
        payload = self._payload(messages, max_tokens, temperature, stream=True)
        original_model = payload["model"]
        started = False
        try:
            for chunk in self._stream_response(payload):
                started = True
                yield chunk
        except Exception as e:
            if started:
                if isinstance(e, GenerationError):
                    raise
                raise GenerationError(f"Stream interrupted: {e}") from e
            if self.config.fallback_model and original_model != self.config.fallback_model:
                logger.warning(f"Streaming failed for {original_model}: {e}. Trying fallback.")
                payload["model"] = self.config.fallback_model
                try:
                    yield from self._stream_response(payload)
                except Exception as fallback_error:
                    raise GenerationError(str(fallback_error)) from fallback_error
            else:
                raise GenerationError(str(e)) from e

    def _backoff(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + random.uniform(0, 1)

    def _sync_response(self, payload: Dict[str, Any]) -> GenerationChunk:
        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=self.config.timeout) as client:
                    response = client.post(self.base_url, headers=self.headers, json=payload)

                    if response.status_code == 429:
                        delay = self._backoff(attempt)
                        logger.warning(f"Rate limited (429). Retrying in {delay:.2f}s... (Attempt {attempt+1}/{self.max_retries})")
                        time.sleep(delay)
                        continue

                    response.raise_for_status()
                    choice = response.json()["choices"][0]
                    return GenerationChunk(
                        delta=choice["message"]["content"] or "",
                        finish_reason=choice.get("finish_reason")
                    )
            except Exception as e:
                if attempt == self.max_retries - 1:
                    raise e
                delay = self._backoff(attempt)
                logger.warning(f"Request failed: {e}. Retrying in {delay:.2f}s...")
                time.sleep(delay)

        raise GenerationError("Failed after maximum retries")

    def _stream_response(self, payload: Dict[str, Any]) -> Generator[GenerationChunk, None, None]:
        for attempt in range(self.max_retries):
            started = False
            try:
                with httpx.Client(timeout=self.config.timeout) as client:
                    with client.stream("POST", self.base_url, headers=self.headers, json=payload) as response:
                        if response.status_code == 429:
                            delay = self._backoff(attempt)
                            logger.warning(f"Rate limited (429) during stream initiation. Retrying in {delay:.2f}s...")
                            time.sleep(delay)
                            continue

                        response.raise_for_status()
                        for line in response.iter_lines():
                            if not line:
                                continue
                            if line.startswith("data: "):
                                line = line[6:]

                            if line.strip() == "[DONE]":
                                break

                            try:
                                event = json.loads(line)
                            except json.JSONDecodeError:
                                continue
                            if not event.get("choices"):
                                continue
                            choice = event["choices"][0]
                            content = choice.get("delta", {}).get("content") or ""
                            finish_reason = choice.get("finish_reason")
                            if content or finish_reason:
                                started = True
                                yield GenerationChunk(delta=content, finish_reason=finish_reason)
                        return
            except Exception as e:
                if started or attempt == self.max_retries - 1:
                    raise e
                delay = self._backoff(attempt)
                logger.warning(f"Stream failed: {e}. Retrying in {delay:.2f}s...")
                time.sleep(delay)

        raise GenerationError("Failed after maximum retries")
