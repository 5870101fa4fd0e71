"""
Unit Tests — JobCoordinator
════════════════════════════
Coverage targets:
  ✅ accepted while a slot is free, queued (FIFO, 1-based position) when full
  ✅ never more than max_concurrent_processing_jobs running at once
  ✅ rejected with a reason: empty text, unknown, not pending, in flight, closed
  ✅ cancel(): queued job dropped → 'error'; running job stops at boundary
  ✅ reprocess(): clears chunks, resets terminal status, runs again
  ✅ sweep_once() times out stuck documents
  ✅ close() leaves queued documents 'pending'
"""

from __future__ import annotations

import asyncio

import pytest

from docflow.services.coordinator import SubmissionOutcome


async def _until(predicate, attempts: int = 200) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


@pytest.fixture
def gated(fake_provider):
    """Blocks every embedding call until gate.set()."""
    fake_provider.gate = asyncio.Event()
    return fake_provider.gate


@pytest.mark.unit
class TestAdmission:

    async def test_accepted_job_runs_to_ready(self, make_container, long_text):
        c = make_container()
        doc = await c.documents.create()

        result = await c.coordinator.submit(doc.id, long_text(900))
        assert result.outcome is SubmissionOutcome.ACCEPTED
        assert result.reason is None

        await c.coordinator.wait_idle()
        status = await c.coordinator.get_status(doc.id)
        assert status.status == "ready"
        assert status.error_message is None

    async def test_full_coordinator_queues_fifo(self, make_container, fake_provider, gated):
        c = make_container(max_concurrent_processing_jobs=1)
        docs = [await c.documents.create(title=name) for name in ("a", "b", "c")]

        results = [
            await c.coordinator.submit(d.id, f"{d.title} document body text") for d in docs
        ]

        assert [r.outcome for r in results] == [
            SubmissionOutcome.ACCEPTED, SubmissionOutcome.QUEUED, SubmissionOutcome.QUEUED,
        ]
        assert [r.position for r in results] == [None, 1, 2]
        load = c.coordinator.load()
        assert (load.active, load.queued, load.max_concurrent) == (1, 2, 1)
        assert load.utilization == 1.0
        assert (await c.coordinator.get_status(docs[2].id)).queue_position == 2

        gated.set()
        await c.coordinator.wait_idle()

        assert [call[0][0] for call in fake_provider.calls] == ["a", "b", "c"]
        for d in docs:
            assert (await c.documents.get(d.id)).status == "ready"

    async def test_concurrency_never_exceeds_limit(self, make_container, fake_provider, gated):
        c = make_container(max_concurrent_processing_jobs=2)
        docs = [await c.documents.create() for _ in range(5)]
        for d in docs:
            await c.coordinator.submit(d.id, "some body text")

        await _until(lambda: len(fake_provider.calls) == 2)
        assert c.coordinator.load().active == 2
        assert c.coordinator.load().queued == 3

        gated.set()
        await c.coordinator.wait_idle()
        assert len(fake_provider.calls) == 5


@pytest.mark.unit
class TestRejections:

    @pytest.mark.parametrize("text", ["", "   \n"])
    async def test_empty_text(self, make_container, text):
        c = make_container()
        doc = await c.documents.create()
        result = await c.coordinator.submit(doc.id, text)
        assert result.outcome is SubmissionOutcome.REJECTED
        assert result.reason == "document text is empty"

    async def test_unknown_document(self, make_container, document_id):
        result = await make_container().coordinator.submit(document_id, "text")
        assert result.reason == "document not found"

    async def test_already_in_flight(self, make_container, gated):
        c = make_container()
        doc = await c.documents.create()
        await c.coordinator.submit(doc.id, "text")

        result = await c.coordinator.submit(doc.id, "text")
        assert result.outcome is SubmissionOutcome.REJECTED
        assert "already" in result.reason
        gated.set()

    async def test_terminal_document_needs_reprocess(self, make_container):
        c = make_container()
        doc = await c.documents.create()
        await c.coordinator.submit(doc.id, "text")
        await c.coordinator.wait_idle()

        result = await c.coordinator.submit(doc.id, "text")
        assert result.outcome is SubmissionOutcome.REJECTED
        assert "reprocess" in result.reason

    async def test_closed_coordinator(self, make_container):
        c = make_container()
        doc = await c.documents.create()
        await c.coordinator.close()
        result = await c.coordinator.submit(doc.id, "text")
        assert result.reason == "coordinator is shutting down"


@pytest.mark.unit
class TestCancellation:

    async def test_cancel_queued_job(self, make_container, fake_provider, gated):
        c = make_container(max_concurrent_processing_jobs=1)
        first, second = await c.documents.create(), await c.documents.create()
        await c.coordinator.submit(first.id, "first body")
        await c.coordinator.submit(second.id, "second body")

        assert await c.coordinator.cancel(second.id)
        assert not c.coordinator.is_in_flight(second.id)
        doc = await c.documents.get(second.id)
        assert doc.status == "error"
        assert doc.error_message == "processing cancelled"

        gated.set()
        await c.coordinator.wait_idle()
        assert [call[0] for call in fake_provider.calls] == ["first body"]

    async def test_cancel_running_job(self, make_container, fake_provider, gated):
        c = make_container()
        doc = await c.documents.create()
        await c.coordinator.submit(doc.id, "running body")
        await _until(lambda: fake_provider.calls)

        assert await c.coordinator.cancel(doc.id)
        gated.set()
        await c.coordinator.wait_idle()

        stored = await c.documents.get(doc.id)
        assert stored.status == "error"
        assert stored.error_message == "processing cancelled"

    async def test_cancel_unknown_returns_false(self, make_container, document_id):
        assert not await make_container().coordinator.cancel(document_id)


@pytest.mark.unit
class TestReprocess:

    async def test_reprocess_replaces_chunks(self, make_container, long_text):
        c = make_container(chunk_size=100, chunk_overlap=0)
        doc = await c.documents.create()
        await c.coordinator.submit(doc.id, long_text(2000))
        await c.coordinator.wait_idle()
        assert await c.chunks.count_chunks(doc.id) == 5

        result = await c.coordinator.reprocess(doc.id, long_text(800))
        assert result.outcome is SubmissionOutcome.ACCEPTED
        await c.coordinator.wait_idle()

        stored = await c.documents.get(doc.id)
        assert stored.status == "ready"
        assert stored.chunk_count == 2
        assert await c.chunks.count_chunks(doc.id) == 2

    async def test_reprocess_after_error(self, make_container, fake_provider, http_error):
        c = make_container()
        fake_provider.failures = [http_error(400)]
        doc = await c.documents.create()
        await c.coordinator.submit(doc.id, "body text")
        await c.coordinator.wait_idle()
        assert (await c.documents.get(doc.id)).status == "error"

        await c.coordinator.reprocess(doc.id, "body text")
        await c.coordinator.wait_idle()
        stored = await c.documents.get(doc.id)
        assert stored.status == "ready"
        assert stored.error_message is None

    async def test_reprocess_in_flight_is_rejected(self, make_container, gated):
        c = make_container()
        doc = await c.documents.create()
        await c.coordinator.submit(doc.id, "body text")
        result = await c.coordinator.reprocess(doc.id, "body text")
        assert result.outcome is SubmissionOutcome.REJECTED
        gated.set()


@pytest.mark.unit
class TestSweepAndShutdown:

    async def test_sweep_once_times_out_stuck_documents(self, make_container, wall_clock):
        c = make_container()
        doc = await c.documents.create()
        await c.documents.mark_processing(doc.id, 100)
        wall_clock.advance(minutes=6)

        report = await c.coordinator.sweep_once()

        assert report.timed_out == [doc.id]
        stored = await c.documents.get(doc.id)
        assert stored.status == "error"
        assert stored.error_message == "processing timed out"

    async def test_close_leaves_queued_documents_pending(self, make_container, gated):
        c = make_container(max_concurrent_processing_jobs=1)
        running, waiting = await c.documents.create(), await c.documents.create()
        await c.coordinator.submit(running.id, "running body")
        await c.coordinator.submit(waiting.id, "waiting body")

        gated.set()
        await c.coordinator.close(timeout=5)

        assert (await c.documents.get(waiting.id)).status == "pending"
        assert c.coordinator.load().queued == 0
