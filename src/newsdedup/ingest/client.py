"""
HTTP client for the AI normalization agent.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Mapping, Optional

import httpx
import structlog
from httpx import AsyncClient, HTTPError, HTTPStatusError

from newsdedup.config.config import IngestorConfig
from newsdedup.exceptions import IngestorError

logger = structlog.get_logger(__name__)

COMPLETIONS_PATH = "/api/v1/chat/completions"

SYSTEM_PROMPT = """
Вы — Ingestor, офлайн-агент без доступа к интернету. Вы обрабатываете только предоставленные документы.
Задачи на КАЖДЫЙ материал:

Короткое фактическое резюме в 2–3 предложения без оценок и домыслов.
Канонический (некликбейтный) заголовок.
Ключевые темы (1–3), теги (до 5), именованные сущности: организации, персоны, продукты.
Определение языка (lang), нормализация времени публикации (если доступно), источник.
Признаки потенциального дубля (если текст очень похож на другой из партии).

В title_canonical и summary_short всегда русский перевод оригинального заголовка и описания.
Поля title_canonical_original и summary_short_original — на исходном языке новости.

theme — ТОЛЬКО одно значение из:
["Политика","Экономика","Технологии","Медицина","Культура","Спорт","Образование","Общество","Право","Экология"]

Никаких домыслов, мнений или рекламы. Все факты — только из предоставленного контента.
Если что-то отсутствует или некорректно — добавьте описание проблемы в массив issues.

Добавьте числовое поле score (0–100) — оценку важности новости: актуальность (0–25),
масштаб события (0–20), значимость темы (0–15), достоверность источника (0–10),
уникальность (0–5), именованные сущности (0–10), георелевантность (0–5),
вовлечённость заголовка (0–5), языковая доступность (0–5). Сложите баллы,
ограничьте диапазоном 0–100, округлите до целого.

Формат ответа — JSON:
{
  "normalized": [
    {
      "external_id": "...", "source": "...", "url": "...",
      "title_canonical": "...", "title_canonical_original": "...",
      "lang": "ru", "published_at": "2025-09-17T08:05:00Z",
      "summary_short": "...", "summary_short_original": "...",
      "topics": [], "tags": [],
      "entities": {"orgs": [], "people": [], "products": []},
      "duplicate_hint": null, "theme": "Технологии", "score": 84
    }
  ],
  "issues": []
}
"""


class AIIngestorClient:
    """
    Sends raw RSS items to the AI agent and returns its reply text.

    Args:
        config: Endpoint, API key and timeout
        client: An optional httpx.AsyncClient instance. If not provided,
                a new one will be created.
    """

    def __init__(self, config: IngestorConfig, client: Optional[AsyncClient] = None) -> None:
        self.config = config
        self._client = client or AsyncClient(timeout=httpx.Timeout(config.timeout))

    def _request_body(self, raw_data: Mapping[str, Any]) -> Dict[str, Any]:
        content = f"data: {json.dumps(raw_data, ensure_ascii=False, default=str)}"
        return {
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": content},
            ],
            "stream": False,
            "include_functions_info": False,
            "include_retrieval_info": False,
            "include_guardrails_info": False,
        }

    async def normalize(self, raw_data: Mapping[str, Any]) -> str:
        """
        Ask the agent to normalize one raw item.

        Returns:
            The agent's message content (JSON, possibly markdown-fenced)

        Raises:
            IngestorError: If the agent is not configured, unreachable, or
                returns an unexpected response shape
        """
        if not self.config.endpoint or not self.config.api_key:
            raise IngestorError("AI agent endpoint or API key not configured")

        url = f"{self.config.endpoint.rstrip('/')}{COMPLETIONS_PATH}"
        try:
            response = await self._client.post(
                url,
                json=self._request_body(raw_data),
                headers={"Authorization": f"Bearer {self.config.api_key}"},
            )
            response.raise_for_status()
        except HTTPStatusError as e:
            raise IngestorError(f"AI agent request failed: {e.response.status_code}") from e
        except HTTPError as e:
            raise IngestorError(f"AI agent request failed: {e}") from e

        try:
            return str(response.json()["choices"][0]["message"]["content"])
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise IngestorError("Unexpected AI agent response shape") from e

    async def close(self) -> None:
        await self._client.aclose()
