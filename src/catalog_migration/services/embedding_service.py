"""Embedding generation through the shared rate-limited client."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

from openai import AsyncOpenAI

from catalog_migration.config import Settings
from catalog_migration.core.constants import CATEGORY_EMBEDDING
from catalog_migration.core.exceptions import ConfigurationError, RecordError
from catalog_migration.core.logging import get_logger
from catalog_migration.migration.models import Record
from catalog_migration.services.rate_limiter import RemoteExecutor

logger = get_logger(__name__)


class EmbeddingService:
    """Turns record texts into vectors of the configured dimensionality."""

    def __init__(
        self,
        settings: Settings,
        executor: RemoteExecutor,
        client: AsyncOpenAI | None = None,
    ):
        self.settings = settings
        self.executor = executor
        self.model = settings.openai_embedding_model
        self.dimensions = settings.vector_dimensions
        # Throttling is retried by the executor, so the SDK must not retry on its own.
        self.client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.openai_timeout,
            max_retries=0,
        )

    async def embed_texts(
        self,
        texts: Sequence[str],
        *,
        operation_id: str | None = None,
    ) -> list[list[float]]:
        """Embed ``texts`` in one remote call.

        Raises:
            ConfigurationError: The service returned vectors of another size.
        """
        if not texts:
            return []

        async def _call():
            params: dict[str, object] = {"model": self.model, "input": list(texts)}
            if self.model.startswith("text-embedding-3"):
                params["dimensions"] = self.dimensions
            return await self.client.embeddings.create(**params)  # type: ignore[arg-type]

        response = await self.executor.execute(
            CATEGORY_EMBEDDING, _call, operation_id=operation_id or "embedding"
        )
        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]

        if len(vectors) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, received {len(vectors)}")
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise ConfigurationError(
                    f"Embedding model {self.model} returned {len(vector)} dimensions, "
                    f"expected {self.dimensions}"
                )
        return vectors

    async def embed_records(
        self,
        records: Sequence[Record],
        *,
        sub_batch_size: int,
        max_concurrency: int,
    ) -> list[str]:
        """Fill ``record.embedding`` in place, sub-batch by sub-batch.

        A failed sub-batch leaves its records with ``embedding = None`` and
        contributes one error message per record; it never fails the batch.
        A dimensionality mismatch is a configuration problem and is raised.
        """
        pending = [record for record in records if record.embedding_text]
        for record in records:
            if not record.embedding_text:
                record.embedding = None
        if not pending:
            return []

        chunks = [pending[i : i + sub_batch_size] for i in range(0, len(pending), sub_batch_size)]
        sem = asyncio.Semaphore(max_concurrency)

        async def _embed_chunk(idx: int, chunk: list[Record]) -> None:
            async with sem:
                vectors = await self.embed_texts(
                    [record.embedding_text or "" for record in chunk],
                    operation_id=f"embedding-{chunk[0].key}-{idx}",
                )
            for record, vector in zip(chunk, vectors, strict=True):
                record.embedding = vector

        results = await asyncio.gather(
            *(_embed_chunk(idx, chunk) for idx, chunk in enumerate(chunks)),
            return_exceptions=True,
        )

        errors: list[str] = []
        for chunk, result in zip(chunks, results, strict=True):
            if isinstance(result, ConfigurationError):
                raise result
            if isinstance(result, BaseException):
                logger.error(
                    f"Embedding failed for {len(chunk)} records "
                    f"({chunk[0].key}..{chunk[-1].key}): {result}"
                )
                for record in chunk:
                    record.embedding = None
                    errors.append(RecordError(record.key, f"embedding failed: {result}").message)

        logger.debug(f"Embedded {len(pending) - len(errors)}/{len(pending)} records")
        return errors
