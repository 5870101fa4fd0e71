"""
Unit Tests — DocumentPipeline
══════════════════════════════
Coverage targets:
  ✅ pending → processing → ready with every chunk stored in index order
  ✅ Batches of embedding_batch_size with the base delay between them
  ✅ Failed batch → 'error'; batches persisted before it are kept
  ✅ Transient failures retried with backoff and recovered
  ✅ Empty text → 'error'
  ✅ Cancellation honoured at batch boundaries
  ✅ Non-pending documents are skipped, not re-run
  ✅ Optional AI abstract is stored; its failure is non-fatal
  ✅ Keywords merged across batches; frequency fallback when the model fails
"""

from __future__ import annotations

import asyncio

import pytest

from docflow.processing.summarizer import AbstractModel
from docflow.storage.base import DocumentStatus

# chunk_size=100 tokens, overlap=0, 4 chars/token → 400-char windows
SMALL = {"chunk_size": 100, "chunk_overlap": 0, "embedding_batch_size": 2}


class FailOnCall:
    """Wraps a provider and raises `error` on the given 1-based call numbers."""

    def __init__(self, inner, error, on_calls):
        self.inner = inner
        self.error = error
        self.on_calls = set(on_calls)
        self.calls = 0

    async def embed_batch(self, texts):
        self.calls += 1
        if self.calls in self.on_calls:
            raise self.error
        return await self.inner.embed_batch(texts)


class FakeAbstractModel(AbstractModel):

    def __init__(self, reply: str = "A short abstract.", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, system: str, user: str, max_tokens: int = 200, json_mode: bool = False) -> str:
        self.prompts.append(user)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.mark.unit
class TestPipelineHappyPath:

    async def test_document_becomes_ready(self, make_container, long_text, fake_provider, recording_sleep):
        c = make_container(**SMALL)
        doc = await c.documents.create(title="Handbook")

        outcome = await c.pipeline.process(doc.id, long_text(2000), title="Handbook")

        assert outcome.status is DocumentStatus.READY
        assert outcome.chunk_count == 5
        assert fake_provider.batch_sizes == [2, 2, 1]
        assert recording_sleep.delays == [0.05, 0.05]

        stored = await c.documents.get(doc.id)
        assert stored.status == "ready"
        assert stored.chunk_count == 5
        assert stored.text_length == 2000
        rows = await c.chunks.list_chunks(doc.id)
        assert [r.chunk_index for r in rows] == [0, 1, 2, 3, 4]

    async def test_processing_logs_record_each_stage(self, make_container, long_text):
        c = make_container(**SMALL)
        doc = await c.documents.create()
        await c.pipeline.process(doc.id, long_text(1000))

        stages = [(log.stage, log.status) for log in await c.logs.list_logs(doc.id)]
        assert stages[0] == ("chunk", "started")
        assert ("embed", "started") in stages
        assert stages.count(("store", "progress")) == 2
        assert stages[-1] == ("complete", "completed")

    async def test_text_is_normalized_before_chunking(self, make_container):
        c = make_container()
        doc = await c.documents.create()
        await c.pipeline.process(doc.id, "\ufeffHello\r\nworld   ")
        rows = await c.chunks.list_chunks(doc.id)
        assert rows[0].content == "Hello\nworld"


@pytest.mark.unit
@pytest.mark.resilience
class TestPipelineFailures:

    async def test_failed_batch_marks_error_and_keeps_earlier_batches(
        self, make_container, long_text, fake_provider, http_error
    ):
        c = make_container(**SMALL)
        c.pipeline._batcher._provider = FailOnCall(fake_provider, http_error(400, "bad input"), [2])
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, long_text(2000))

        assert outcome.status is DocumentStatus.ERROR
        assert outcome.chunk_count == 2
        assert outcome.error_message.startswith("embedding request rejected")
        stored = await c.documents.get(doc.id)
        assert stored.status == "error"
        assert stored.error_message == outcome.error_message
        assert await c.chunks.count_chunks(doc.id) == 2

    async def test_transient_failure_recovers(
        self, make_container, long_text, fake_provider, recording_sleep, http_error
    ):
        c = make_container(**SMALL)
        fake_provider.failures = [http_error(503), http_error(429)]
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, long_text(800))

        assert outcome.status is DocumentStatus.READY
        # retry backoff: 1s then 2s (jitter off)
        assert recording_sleep.delays[:2] == [1.0, 2.0]

    async def test_exhausted_retries_fail_document(self, make_container, long_text, fake_provider):
        c = make_container(max_retries=1)
        fake_provider.failures = [TimeoutError("upstream timed out")] * 2
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, long_text(300))

        assert outcome.status is DocumentStatus.ERROR
        assert outcome.error_message.startswith("embedding failed")
        assert len(fake_provider.calls) == 2

    @pytest.mark.parametrize("text", ["", "  \n\t "])
    async def test_empty_text_is_an_error(self, make_container, text, fake_provider):
        c = make_container()
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, text)

        assert outcome.status is DocumentStatus.ERROR
        assert outcome.error_message == "document contains no extractable text"
        assert fake_provider.calls == []

    async def test_cancel_before_first_batch(self, make_container, long_text, fake_provider):
        c = make_container()
        doc = await c.documents.create()
        cancel = asyncio.Event()
        cancel.set()

        outcome = await c.pipeline.process(doc.id, long_text(500), cancel_event=cancel)

        assert outcome.status is DocumentStatus.ERROR
        assert outcome.error_message == "processing cancelled"
        assert fake_provider.calls == []

    async def test_cancel_stops_at_batch_boundary(self, make_container, long_text, fake_provider):
        c = make_container(**SMALL)
        cancel = asyncio.Event()

        class CancelAfterFirst:
            async def embed_batch(self, texts):
                cancel.set()
                return await fake_provider.embed_batch(texts)

        c.pipeline._batcher._provider = CancelAfterFirst()
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, long_text(2000), cancel_event=cancel)

        # the in-flight batch completes and is stored, nothing after it runs
        assert outcome.error_message == "processing cancelled"
        assert outcome.chunk_count == 2
        assert len(fake_provider.calls) == 1

    async def test_cancel_after_final_batch_keeps_document_ready(
        self, make_container, long_text, fake_provider
    ):
        c = make_container(**SMALL)
        cancel = asyncio.Event()

        class CancelOnLast:
            async def embed_batch(self, texts):
                if len(fake_provider.calls) == 2:
                    cancel.set()
                return await fake_provider.embed_batch(texts)

        c.pipeline._batcher._provider = CancelOnLast()
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, long_text(2000), cancel_event=cancel)

        assert outcome.status is DocumentStatus.READY
        assert outcome.chunk_count == 5
        assert (await c.documents.get(doc.id)).error_message is None

    async def test_non_pending_document_is_skipped(self, make_container, long_text, fake_provider):
        c = make_container()
        doc = await c.documents.create()
        await c.pipeline.process(doc.id, long_text(300))
        calls = len(fake_provider.calls)

        outcome = await c.pipeline.process(doc.id, long_text(300))

        assert outcome.status is DocumentStatus.READY
        assert len(fake_provider.calls) == calls

    async def test_unknown_document(self, make_container, document_id):
        outcome = await make_container().pipeline.process(document_id, "text")
        assert outcome.status is DocumentStatus.ERROR
        assert outcome.error_message == "document not found"


@pytest.mark.unit
class TestAbstract:

    async def test_abstract_is_stored(self, make_container, long_text):
        model = FakeAbstractModel("Concise summary of the handbook.")
        c = make_container(abstract_model=model)
        doc = await c.documents.create(title="Handbook")

        await c.pipeline.process(doc.id, long_text(600), title="Handbook")

        stored = await c.documents.get(doc.id)
        assert stored.abstract == "Concise summary of the handbook."
        assert '"Handbook"' in model.prompts[0]

    async def test_abstract_failure_is_not_fatal(self, make_container, long_text, http_error):
        c = make_container(abstract_model=FakeAbstractModel(error=http_error(401)))
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, long_text(600))

        assert outcome.status is DocumentStatus.READY
        assert (await c.documents.get(doc.id)).abstract is None


KEYWORD_REPLY = '{"keywords": [{"term": "Lorem", "weight": 0.9}, {"word": "ipsum", "weight": 0.4}]}'


@pytest.mark.unit
class TestKeywords:

    async def test_keywords_are_merged_and_stored(self, make_container, long_text):
        model = FakeAbstractModel(KEYWORD_REPLY)
        c = make_container(keyword_model=model, ai_keyword_batch_chars=1000, **SMALL)
        doc = await c.documents.create(title="Handbook")

        outcome = await c.pipeline.process(doc.id, long_text(2000), title="Handbook")

        assert outcome.status is DocumentStatus.READY
        assert len(model.prompts) > 1
        stored = await c.documents.get(doc.id)
        assert stored.keywords == [
            {"term": "lorem", "weight": 1.0},
            {"term": "ipsum", "weight": 0.1},
        ]
        logs = [log for log in await c.logs.list_logs(doc.id) if log.stage == "keywords"]
        assert logs[0].details == {"count": 2, "method": f"ai-batched-{len(model.prompts)}"}

    async def test_model_failure_falls_back_to_frequency(self, make_container, long_text, http_error):
        c = make_container(keyword_model=FakeAbstractModel(error=http_error(401)))
        doc = await c.documents.create()

        outcome = await c.pipeline.process(doc.id, long_text(600))

        assert outcome.status is DocumentStatus.READY
        stored = await c.documents.get(doc.id)
        assert stored.keywords
        assert all(0.1 <= k["weight"] <= 1.0 for k in stored.keywords)
        logs = [log for log in await c.logs.list_logs(doc.id) if log.stage == "keywords"]
        assert logs[0].details["method"] == "frequency"

    async def test_unparseable_reply_falls_back_to_frequency(self, make_container, long_text):
        c = make_container(keyword_model=FakeAbstractModel("no keywords here"))
        doc = await c.documents.create()

        await c.pipeline.process(doc.id, long_text(600))

        terms = [k["term"] for k in (await c.documents.get(doc.id)).keywords]
        assert "lorem" in terms

    async def test_reprocessing_clears_keywords(self, make_container, long_text):
        c = make_container(keyword_model=FakeAbstractModel(KEYWORD_REPLY))
        doc = await c.documents.create()
        await c.pipeline.process(doc.id, long_text(600))

        assert await c.documents.reset_for_reprocessing(doc.id)

        assert (await c.documents.get(doc.id)).keywords is None
