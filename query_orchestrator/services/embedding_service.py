import math

import httpx

from query_orchestrator.core.config import settings

# Gemini Embedding REST endpoint
_GEMINI_EMBED_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "{model}:embedContent"
)
_GEMINI_BATCH_URL = (
    "https://generativelanguage.googleapis.com/v1beta/models/"
    "{model}:batchEmbedContents"
)


class EmbeddingServiceError(RuntimeError):
    pass


def cosine_similarity(left: list[float], right: list[float]) -> float:
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    if norm == 0:
        return 0.0
    return dot / norm


class EmbeddingService:
    """Async client for the Gemini embedding endpoints."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        self._model = model or settings.embedding_model_name
        self._timeout = timeout or settings.embedding_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self._api_key:
            raise EmbeddingServiceError("GEMINI_API_KEY is not set. Add it to your .env file.")
        return {"x-goog-api-key": self._api_key}

    async def _post(self, url: str, payload: dict) -> dict:
        headers = self._headers()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise EmbeddingServiceError(
                f"Gemini embedding API error {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingServiceError(f"Failed to call Gemini embedding API: {exc}") from exc
        return response.json()

    async def embed(self, text: str) -> list[float]:
        """Embed a single string using Gemini embedContent."""
        cleaned = text.strip()
        if not cleaned:
            raise EmbeddingServiceError("Text to embed is empty")

        data = await self._post(
            _GEMINI_EMBED_URL.format(model=self._model),
            {
                "model": f"models/{self._model}",
                "content": {"parts": [{"text": cleaned}]},
            },
        )
        values = data.get("embedding", {}).get("values")
        if not values:
            raise EmbeddingServiceError("Gemini returned empty embedding values")
        return values

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts using Gemini batchEmbedContents."""
        if not texts:
            return []

        data = await self._post(
            _GEMINI_BATCH_URL.format(model=self._model),
            {
                "requests": [
                    {
                        "model": f"models/{self._model}",
                        "content": {"parts": [{"text": text}]},
                    }
                    for text in texts
                ]
            },
        )
        embeddings = data.get("embeddings", [])
        if len(embeddings) != len(texts):
            raise EmbeddingServiceError(
                f"Gemini returned {len(embeddings)} embeddings for {len(texts)} texts"
            )
        return [item["values"] for item in embeddings]
