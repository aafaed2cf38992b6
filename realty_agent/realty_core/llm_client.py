from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from realty_agent.realty_core.config import DEFAULT_LLM_ENDPOINT, DEFAULT_LLM_MODEL

HISTORY_LIMIT = 6
MAX_RESPONSE_TOKENS = 256


@dataclass
class LLMResult:
    text: Optional[str]
    error: Optional[str] = None


class LLMClient:
    """OpenAI-compatible chat completions client (Groq by default)."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_LLM_MODEL,
        endpoint: str = DEFAULT_LLM_ENDPOINT,
        timeout_seconds: float = 10.0,
        temperature: float = 0.7,
        max_tokens: int = MAX_RESPONSE_TOKENS,
    ) -> None:
        self.api_key = api_key.strip()
        self.model = model.strip() or DEFAULT_LLM_MODEL
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.temperature = temperature
        self.max_tokens = max_tokens

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def build_payload(
        self,
        system_prompt: str,
        history: Sequence[Dict[str, Any]],
        user_message: str,
    ) -> Dict[str, Any]:
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        for item in list(history)[-HISTORY_LIMIT:]:
            text = str(item.get("text") or "").strip()
            if not text:
                continue
            role = "user" if item.get("direction") == "inbound" else "assistant"
            messages.append({"role": role, "content": text})
        messages.append({"role": "user", "content": user_message})
        return {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    @staticmethod
    def _extract_text(raw: Any) -> Optional[str]:
        if not isinstance(raw, dict):
            return None
        choices = raw.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        head = choices[0] if isinstance(choices[0], dict) else {}
        message = head.get("message") if isinstance(head.get("message"), dict) else {}
        content = message.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()
        return None

    async def generate(
        self,
        system_prompt: str,
        history: Sequence[Dict[str, Any]],
        user_message: str,
    ) -> LLMResult:
        if not self.is_configured():
            return LLMResult(text=None, error="LLM_API_KEY is not configured")

        payload = self.build_payload(system_prompt, history, user_message)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    self.endpoint,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
            response.raise_for_status()
            raw = response.json() if response.text else {}
        except httpx.HTTPStatusError as exc:
            return LLMResult(text=None, error=f"LLM HTTP error: {exc.response.status_code}")
        except httpx.RequestError as exc:
            return LLMResult(text=None, error=f"LLM connection error: {exc}")
        except ValueError:
            return LLMResult(text=None, error="LLM response is not valid JSON")

        text = self._extract_text(raw)
        if text is None:
            return LLMResult(text=None, error="LLM response has no message content")
        return LLMResult(text=text)
