"""Batch embedding generation with the OpenAI embeddings API."""

import logging
from typing import List, Optional

from openai import AsyncOpenAI, OpenAIError, RateLimitError

from docflow.exceptions import EmbeddingError

logger = logging.getLogger(__name__)


class Embedder:
    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = "text-embedding-3-small",
        batch_size: int = 200,
    ):
        self._client = client
        self._model = model
        self._batch_size = batch_size

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed `texts` in batches, preserving order."""
        vectors: List[List[float]] = []
        total_batches = (len(texts) + self._batch_size - 1) // self._batch_size
        for batch_num, start in enumerate(range(0, len(texts), self._batch_size), start=1):
            batch = texts[start:start + self._batch_size]
            logger.debug("Embedding batch %d/%d (%d texts)", batch_num, total_batches, len(batch))
            vectors.extend(await self._embed_batch(batch, start))
        return vectors

    async def _embed_batch(self, batch: List[str], offset: int) -> List[List[float]]:
        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=batch,
                encoding_format="float",
            )
        except RateLimitError as e:
            raise EmbeddingError(
                f"Rate limit exceeded while embedding chunks {offset}-{offset + len(batch) - 1}"
            ) from e
        except OpenAIError as e:
            raise EmbeddingError(f"Embedding generation failed: {e}") from e

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(batch):
            raise EmbeddingError(
                f"Expected {len(batch)} embeddings, got {len(data)}"
            )
        return [item.embedding for item in data]


def build_openai_client(api_key: Optional[str]) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key)
