from typing import List
from uuid import UUID

import httpx

from leadflow.config import settings
from leadflow.logging_config import get_logger
from leadflow.services.alert_service import alert_warning

logger = get_logger("knowledge_service")


class KnowledgeError(Exception):
    pass


def get_embedding(text: str) -> List[float]:
    """Get embedding from BGE-M3 service."""
    with httpx.Client(timeout=settings.knowledge_timeout_seconds) as client:
        response = client.post(settings.embedding_url, json={"inputs": text})
        if response.status_code != 200:
            raise KnowledgeError(f"BGE-M3 error: {response.status_code} - {response.text}")

        data = response.json()
        # Handle different response formats
        if isinstance(data, list) and len(data) > 0:
            return data[0] if isinstance(data[0], list) else data
        if isinstance(data, dict):
            return data.get("embedding") or data.get("embeddings") or []
        return []


def _qdrant_headers() -> dict:
    return {"api-key": settings.qdrant_api_key} if settings.qdrant_api_key else {}


def search_knowledge(
    tenant_id: UUID,
    query: str,
    limit: int = 3,
    score_threshold: float = 0.5,
) -> List[dict]:
    """Top-k knowledge entries for the tenant. Any failure returns an empty list."""
    if not query or not query.strip():
        return []

    try:
        embedding = get_embedding(query)
        if not embedding:
            return []

        with httpx.Client(timeout=settings.knowledge_timeout_seconds) as client:
            response = client.post(
                f"{settings.qdrant_host}/collections/{settings.qdrant_collection}/points/search",
                headers=_qdrant_headers(),
                json={
                    "vector": embedding,
                    "limit": limit,
                    "score_threshold": score_threshold,
                    "filter": {"must": [{"key": "metadata.tenant_id", "match": {"value": str(tenant_id)}}]},
                    "with_payload": True,
                },
            )

        if response.status_code != 200:
            logger.error(f"Qdrant search error: {response.status_code} - {response.text}")
            alert_warning("Qdrant search failed", {"status": response.status_code, "query": query[:50]})
            return []

        data = response.json()
    except (httpx.HTTPError, KnowledgeError, ValueError) as e:
        logger.warning(f"Knowledge search failed: {e}")
        return []

    points = data.get("result") if isinstance(data, dict) else None
    if not isinstance(points, list):
        logger.warning(f"Qdrant returned an unexpected body: {type(data).__name__}")
        return []

    results = []
    for point in points:
        if not isinstance(point, dict):
            continue
        payload = point.get("payload") or {}
        metadata = payload.get("metadata") or {}
        content = payload.get("content")
        if not content:
            continue
        results.append(
            {
                "score": point.get("score"),
                "title": payload.get("title") or metadata.get("title") or metadata.get("doc_name") or "Knowledge",
                "content": content,
                "metadata": metadata,
            }
        )

    logger.info(f"Knowledge search: found {len(results)} results for '{query[:30]}...'")
    return results


def format_knowledge_context(results: List[dict]) -> str:
    """Render results as titled sections for the system prompt."""
    return "\n\n".join(f"### {r['title']}\n{r['content']}" for r in results if r.get("content"))
