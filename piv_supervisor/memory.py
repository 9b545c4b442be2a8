"""
Long-term fix memory backed by the Supermemory HTTP API.

Optional: create_memory_client returns None when memory is disabled, and
every function accepts that None. No function raises; failures degrade to
an empty list, None or False.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from .config import MemoryConfig
from .models import FixRecord, MemorySearchResult

logger = logging.getLogger("piv.memory")


class MemoryClient:
    """Thin requests wrapper around the Supermemory REST endpoints."""

    def __init__(self, api_key: str, base_url: str = "https://api.supermemory.ai",
                 timeout_s: float = 15.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        })

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        resp = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout_s)
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError(f"Unexpected response from {path}")
        return body

    def add(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/v3/documents", payload)

    def search(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/v4/search", payload)

    def list_documents(self, limit: int = 1) -> Dict[str, Any]:
        return self._post("/v3/documents/list", {"limit": limit})


def create_memory_client(config: MemoryConfig) -> Optional[MemoryClient]:
    if not config.enabled or not config.api_key:
        return None
    return MemoryClient(config.api_key, config.base_url, config.request_timeout_s)


def _to_result(raw: Dict[str, Any]) -> MemorySearchResult:
    # Hybrid search returns the text under either "memory" or "chunk"
    text = raw.get("memory") or raw.get("chunk") or ""
    try:
        similarity = float(raw.get("similarity") or 0.0)
    except (TypeError, ValueError):
        similarity = 0.0
    metadata = raw.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    return MemorySearchResult(
        id=str(raw.get("id") or ""),
        text=str(text),
        similarity=similarity,
        metadata={str(k): str(v) for k, v in metadata.items()},
    )


def recall_similar_fixes(client: Optional[MemoryClient], query: str,
                         container_tag: Optional[str],
                         config: MemoryConfig) -> List[MemorySearchResult]:
    """Hybrid semantic search. container_tag=None searches across all projects."""
    if client is None:
        return []
    payload: Dict[str, Any] = {
        "q": query,
        "searchMode": "hybrid",
        "limit": config.search_limit,
        "threshold": config.search_threshold,
        "rerank": True,
        "rewriteQuery": True,
    }
    if container_tag:
        payload["containerTag"] = container_tag
    try:
        body = client.search(payload)
        raw_results = body.get("results") or []
        return [_to_result(r) for r in raw_results if isinstance(r, dict)]
    except Exception as e:
        logger.warning(f"Memory recall failed ({container_tag or 'all projects'}): {e}")
        return []


def deduplicate_fixes(results: List[MemorySearchResult]) -> List[MemorySearchResult]:
    """Drop repeated ids (keeping the best score) and sort highest similarity first."""
    best: Dict[str, MemorySearchResult] = {}
    for result in results:
        existing = best.get(result.id)
        if existing is None or result.similarity > existing.similarity:
            best[result.id] = result
    return sorted(best.values(), key=lambda r: r.similarity, reverse=True)


def format_memory_context(results: List[MemorySearchResult]) -> str:
    entries = []
    for r in results:
        entry = f"[{r.similarity:.2f}] {r.text}"
        if r.metadata:
            entry += f"\n  Metadata: {json.dumps(r.metadata)}"
        entries.append(entry)
    return "\n---\n".join(entries)


def store_fix_record(client: Optional[MemoryClient], record: FixRecord) -> Optional[str]:
    """Persist a fix record. Returns the stored id, or None on any failure."""
    if client is None:
        return None
    try:
        body = client.add({
            "content": record.content,
            "customId": record.custom_id,
            "containerTag": record.container_tag,
            "metadata": record.metadata,
            "entityContext": record.entity_context,
        })
    except Exception as e:
        logger.warning(f"Memory store failed for {record.custom_id}: {e}")
        return None
    record_id = body.get("id")
    return str(record_id) if record_id else None


def check_memory_health(client: Optional[MemoryClient]) -> bool:
    if client is None:
        return False
    try:
        client.list_documents(limit=1)
        return True
    except Exception as e:
        logger.debug(f"Memory health check failed: {e}")
        return False
