"""Tests for the embedding service."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from catalog_migration.config import Settings
from catalog_migration.core.exceptions import ConfigurationError, ThrottlingError
from catalog_migration.migration.models import Record
from catalog_migration.services.embedding_service import EmbeddingService


def make_record(key: str, text: str | None) -> Record:
    return Record(key=key, source_row={}, row={"code": key}, embedding_text=text)


@pytest.fixture
def service(app_settings: Settings, executor, fake_embeddings) -> EmbeddingService:
    client = SimpleNamespace(embeddings=fake_embeddings)
    return EmbeddingService(app_settings, executor, client=client)


def test_default_client_does_not_retry_on_its_own(app_settings: Settings, executor):
    service = EmbeddingService(app_settings, executor)
    assert service.client.max_retries == 0


@pytest.mark.asyncio
async def test_embed_texts_requests_target_dimensions(app_settings: Settings, executor):
    client = MagicMock()
    client.embeddings.create = AsyncMock(
        return_value=SimpleNamespace(
            data=[
                SimpleNamespace(index=1, embedding=[2.0] * 4),
                SimpleNamespace(index=0, embedding=[1.0] * 4),
            ]
        )
    )
    service = EmbeddingService(app_settings, executor, client=client)

    vectors = await service.embed_texts(["a", "b"])

    client.embeddings.create.assert_awaited_once_with(
        model="text-embedding-3-large", input=["a", "b"], dimensions=4
    )
    # Ordered by the response index, not arrival order.
    assert vectors == [[1.0] * 4, [2.0] * 4]
    assert executor.categories == ["embedding"]


@pytest.mark.asyncio
async def test_embed_texts_rejects_wrong_dimensions(app_settings: Settings, executor):
    client = MagicMock()
    client.embeddings.create = AsyncMock(
        return_value=SimpleNamespace(data=[SimpleNamespace(index=0, embedding=[0.1] * 3)])
    )
    service = EmbeddingService(app_settings, executor, client=client)

    with pytest.raises(ConfigurationError, match="3 dimensions"):
        await service.embed_texts(["a"])


@pytest.mark.asyncio
async def test_embed_texts_empty_input(service: EmbeddingService, fake_embeddings):
    assert await service.embed_texts([]) == []
    assert fake_embeddings.calls == []


@pytest.mark.asyncio
async def test_embed_records_in_sub_batches(service: EmbeddingService, fake_embeddings):
    records = [make_record(f"A{i}", f"TEXT {i}") for i in range(5)]

    errors = await service.embed_records(records, sub_batch_size=2, max_concurrency=2)

    assert errors == []
    assert [len(call) for call in fake_embeddings.calls] == [2, 2, 1]
    assert all(record.embedding == [6.0] * 4 for record in records)


@pytest.mark.asyncio
async def test_records_without_text_are_not_sent(service: EmbeddingService, fake_embeddings):
    records = [make_record("A1", "TUBO"), make_record("A2", None)]

    errors = await service.embed_records(records, sub_batch_size=10, max_concurrency=1)

    assert errors == []
    assert fake_embeddings.calls == [["TUBO"]]
    assert records[0].embedding is not None
    assert records[1].embedding is None


@pytest.mark.asyncio
async def test_failed_sub_batch_leaves_null_embeddings(service: EmbeddingService, fake_embeddings):
    fake_embeddings.error = ThrottlingError("still throttled", attempts=6)
    records = [make_record("A1", "TUBO"), make_record("A2", "CODO")]

    errors = await service.embed_records(records, sub_batch_size=10, max_concurrency=1)

    assert len(errors) == 2
    assert errors[0].startswith("Record A1: embedding failed")
    assert all(record.embedding is None for record in records)


@pytest.mark.asyncio
async def test_dimension_mismatch_is_raised_from_records(
    app_settings: Settings, executor, fake_embeddings
):
    fake_embeddings.dimensions = 3
    settings = app_settings.model_copy(update={"openai_embedding_model": "text-embedding-ada-002"})
    service = EmbeddingService(settings, executor, client=SimpleNamespace(embeddings=fake_embeddings))

    with pytest.raises(ConfigurationError):
        await service.embed_records(
            [make_record("A1", "TUBO")], sub_batch_size=10, max_concurrency=1
        )
