"""Client for the local Ollama model runner's HTTP API."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from .process import poll_until
from .httpcheck import get_json


@dataclass
class OllamaClient:
    """Health and model listing against ``/api/tags``."""

    base_url: str = "http://localhost:11434"
    timeout: float = 5.0
    transport: Optional[httpx.BaseTransport] = None

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")

    @property
    def tags_url(self) -> str:
        return f"{self.base_url}/api/tags"

    def tags(self) -> Dict[str, Any]:
        payload = get_json(self.tags_url, timeout=self.timeout, transport=self.transport)
        if not isinstance(payload, dict):
            raise ValueError(f"unexpected /api/tags payload: {type(payload).__name__}")
        return payload

    def list_models(self) -> List[str]:
        """Return the names of locally installed models, sorted."""
        models = self.tags().get("models") or []
        return sorted(
            item["name"] for item in models if isinstance(item, dict) and item.get("name")
        )

    def is_healthy(self) -> bool:
        try:
            self.tags()
        except (httpx.HTTPError, ValueError):
            return False
        return True

    def wait_until_ready(
        self,
        *,
        attempts: int,
        interval: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> bool:
        return bool(poll_until(self.is_healthy, attempts=attempts, interval=interval, sleep=sleep))
