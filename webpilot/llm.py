import json
import re
import time
from typing import Any, Dict, List, Optional

import httpx


ALLOWED_ROLES = {"system", "user", "assistant"}
_MODEL_SIZE_RE = re.compile(r"(\d+(?:\.\d+)?b)", re.IGNORECASE)
_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)


def _normalize_model_id(value: str) -> str:
    base = value.split(":")[0].strip()
    if "/" in base:
        base = base.rsplit("/", 1)[-1]
    return base.lower()


def resolve_model_id(preferred: Optional[str], available: List[str]) -> Optional[str]:
    if not preferred or not available:
        return None
    if preferred in available:
        return preferred
    base = preferred.split(":")[0]
    if base in available:
        return base
    target = _normalize_model_id(preferred)
    for mid in available:
        if _normalize_model_id(mid) == target:
            return mid
    size_match = _MODEL_SIZE_RE.search(preferred)
    if size_match:
        size_hint = size_match.group(1).lower()
        for mid in available:
            if size_hint in mid.lower():
                return mid
    return None


def parse_json_object(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pull a JSON object out of a model reply (fenced or bare)."""
    if not content:
        return None
    fenced = _FENCED_JSON_RE.search(content)
    raw = fenced.group(1) if fenced else content
    start = raw.find("{")
    end = raw.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(raw[start : end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def message_content(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or []
    if not choices:
        return ""
    message = choices[0].get("message") or {}
    content = message.get("content")
    if not content:
        content = message.get("reasoning") or message.get("reasoning_content") or ""
    return content if isinstance(content, str) else json.dumps(content, ensure_ascii=True)


class ChatClient:
    """Thin client for an OpenAI-compatible /chat/completions server (Ollama, LM Studio, vLLM)."""

    def __init__(self, base_url: str, max_output_tokens: Optional[int] = None, timeout_s: float = 60):
        self.base_url = base_url.rstrip("/")
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=timeout_s)
        self.model_cache: Dict[str, Dict[str, Any]] = {}
        self.model_cache_ttl = 60.0

    async def list_models(self, base_url: Optional[str] = None) -> Dict[str, Any]:
        url = f"{(base_url or self.base_url).rstrip('/')}/models"
        resp = await self.client.get(url)
        resp.raise_for_status()
        return resp.json()

    async def list_models_cached(self, base_url: Optional[str] = None, force: bool = False) -> List[str]:
        url = (base_url or self.base_url).rstrip("/")
        now = time.monotonic()
        cached = self.model_cache.get(url)
        if cached and not force and now - cached["ts"] < self.model_cache_ttl:
            return cached["ids"]
        resp = await self.list_models(url)
        ids = [m.get("id") for m in resp.get("data", []) if m.get("id")]
        self.model_cache[url] = {"ts": now, "ids": ids}
        return ids

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict) or msg.get("role") not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if not content.strip():
                continue
            sanitized.append({"role": msg["role"], "content": content})
        return sanitized

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 1024,
        response_format: Optional[dict] = None,
        base_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        if not model:
            raise ValueError("model is required")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if response_format:
            payload["response_format"] = response_format
        url = f"{(base_url or self.base_url).rstrip('/')}/chat/completions"
        resp = await self.client.post(url, json=payload)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict):
            data["_model_used"] = model
        return data

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
