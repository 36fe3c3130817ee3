import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from .config import Settings
from .errors import ConfigGenerationError
from .models import TableDiscovery

logger = logging.getLogger(__name__)

ConfigGenerator = Callable[[Sequence[TableDiscovery]], Mapping[str, Any]]

SYSTEM_PROMPT = """You are a data analytics expert. Analyze the database tables and recommend the best charts and KPIs for a dashboard.

Respond with ONLY valid JSON in this format:
{
  "charts": [
    {
      "id": "unique-id",
      "title": "Chart Title",
      "type": "line | bar | pie | area | stat",
      "table": "table_name",
      "columns": {"x": "x_or_category_column", "y": "value_column", "groupBy": "optional_column"},
      "aggregation": "count | sum | avg | min | max",
      "filters": [{"field": "column", "operator": "eq", "value": "..."}]
    }
  ],
  "kpis": [
    {
      "id": "unique-id",
      "title": "KPI Title",
      "table": "table_name",
      "column": "column_name",
      "aggregation": "count | sum | avg",
      "icon": "users | dollar-sign | package | activity | trending-up | wallet | check-circle | clock",
      "compareWith": "previous_period"
    }
  ],
  "reasoning": "Why these charts and KPIs were chosen"
}

Guidelines:
1. Create 4-6 charts showing trends, distributions or comparisons.
2. Create 3-4 KPIs.
3. Prefer line or area charts for date columns, bar charts for categories and pie charts for proportions.
4. Only use table and column names that appear in the input."""

SAMPLE_ROWS_IN_PROMPT = 3


def describe_tables(tables: Sequence[TableDiscovery]) -> str:
    blocks = []
    for table in tables:
        columns = "\n".join(f"  - {column.name} ({column.type})" for column in table.columns)
        block = f"Table: {table.table_name} ({table.row_count} rows)\nColumns:\n{columns}"
        if table.sample_data:
            sample = json.dumps(table.sample_data[:SAMPLE_ROWS_IN_PROMPT], indent=2, default=str)
            block += f"\nSample data:\n{sample}"
        blocks.append(block)
    return "\n\n".join(blocks)


def strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```json"):
        text = text[len("```json"):]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class ChatCompletionsGenerator:
    """Asks an OpenAI compatible chat completions endpoint for a dashboard config."""

    def __init__(self, settings: Settings, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = settings.ai_api_key
        self.base_url = settings.ai_base_url.rstrip("/")
        self.model = settings.ai_model
        self.timeout = settings.http_timeout_seconds
        self.transport = transport

    def __call__(self, tables: Sequence[TableDiscovery]) -> Dict[str, Any]:
        if not self.api_key:
            raise ConfigGenerationError("AI API key is not configured (set AI_API_KEY)")

        messages: List[Dict[str, str]] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": "Analyze these database tables and create a dashboard configuration:\n\n"
                + describe_tables(tables),
            },
        ]
        payload = {"model": self.model, "messages": messages, "temperature": 0.7, "max_tokens": 2000}
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        logger.info("Requesting dashboard config from %s for %d tables", self.model, len(tables))
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions", headers=headers, json=payload
                )
        except httpx.HTTPError as exc:
            raise ConfigGenerationError(f"AI request failed: {exc}") from exc
        if response.status_code != 200:
            raise ConfigGenerationError(f"AI API error: HTTP {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ConfigGenerationError("AI returned a malformed response") from exc
        if not content:
            raise ConfigGenerationError("AI returned an empty response")

        try:
            config = json.loads(strip_code_fence(content))
        except ValueError as exc:
            logger.error("Could not parse AI response: %s", content)
            raise ConfigGenerationError("Failed to parse AI response") from exc
        if not isinstance(config, dict):
            raise ConfigGenerationError("AI response is not a JSON object")
        config.setdefault("model", self.model)
        return config
