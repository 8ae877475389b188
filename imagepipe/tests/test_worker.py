"""Tests for ImageProcessor, the per-task processing algorithm."""

import io
import logging

import pytest
from PIL import Image

from imagepipe.blob_ref import Tier
from imagepipe.errors import StorageQuotaError, TransientProcessingError
from imagepipe.image_record import ProcessingStatus, VariantStatus
from imagepipe.state_machine import transition
from imagepipe.worker import TaskOutcome, backoff_delay


def outcomes(results):
    return [r.outcome for r in results]


class TestBackoff:
    """Tests for the requeue delay."""

    @pytest.mark.parametrize('attempt,expected', [(1, 5), (2, 10), (3, 20), (4, 40), (8, 300)])
    def test_doubles_up_to_maximum(self, attempt, expected):
        assert backoff_delay(attempt, 5, 300) == expected


class TestSuccessfulProcessing:
    """Tests for images that process cleanly."""

    def test_camera_original(self, pipeline, drain, large_jpeg_bytes):
        accepted = pipeline.ingestor.ingest('g1', large_jpeg_bytes, 'image/jpeg', 'IMG_0001.jpg')

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.COMPLETED]
        assert results[0].bytes_generated > 0
        record = pipeline.store.get(accepted['image_id'])
        assert record.processing_status == ProcessingStatus.COMPLETED
        assert (record.width, record.height, record.format) == (4000, 3000, 'jpeg')
        assert record.processing_errors is None
        assert record.processing_completed_at is not None
        assert record.validate(['thumbnail', 'web', 'preview']) == []

        expected = {
            'thumbnail': ((300, 225), Tier.HOT),
            'web': ((1200, 900), Tier.HOT),
            'preview': ((800, 600), Tier.WARM),
        }
        for name, (size, tier) in expected.items():
            ref = record.variants[name].blob_ref
            assert ref.tier == tier
            img = Image.open(io.BytesIO(pipeline.router.get(ref)))
            assert img.size == size
            assert img.format == 'WEBP'

        status = pipeline.status.get_status(accepted['image_id'])
        assert all(v['url'] for v in status['variants'].values())
        assert pipeline.queue.pending_count() == 0

    def test_original_untouched(self, pipeline, drain, sample_image_bytes):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        drain(pipeline)

        record = pipeline.store.get(accepted['image_id'])

        assert record.original.tier == Tier.COLD
        assert pipeline.router.get(record.original) == sample_image_bytes

    def test_duplicate_delivery_is_ignored(self, pipeline, drain, sample_image_bytes):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        drain(pipeline)
        version = pipeline.store.get(accepted['image_id']).version
        blobs = {tier: sorted(r.key for r in pipeline.router.list_refs(tier)) for tier in Tier}

        pipeline.queue.enqueue(accepted['image_id'])
        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.DUPLICATE]
        assert pipeline.store.get(accepted['image_id']).version == version
        assert {tier: sorted(r.key for r in pipeline.router.list_refs(tier)) for tier in Tier} == blobs
        assert pipeline.queue.pending_count() == 0

    def test_task_for_deleted_image_is_dropped(self, pipeline, drain, sample_image_bytes):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        pipeline.ingestor.delete_image(accepted['image_id'])

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.ABORTED]
        assert pipeline.queue.pending_count() == 0


class TestRetries:
    """Tests for transient failures and the retry budget."""

    def test_transient_failures_then_success(self, make_pipeline, flaky_storage, drain, sample_image_bytes):
        storage = flaky_storage({'web'}, TransientProcessingError('connection reset'), fail_times=2)
        pipeline = make_pipeline(storage=storage)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.RETRYING, TaskOutcome.RETRYING, TaskOutcome.COMPLETED]
        record = pipeline.store.get(accepted['image_id'])
        assert record.processing_status == ProcessingStatus.COMPLETED
        assert record.processing_errors is None
        assert record.variants['web'].error is None

    def test_retry_keeps_finished_variants(self, make_pipeline, flaky_storage, drain, sample_image_bytes, mocker):
        storage = flaky_storage({'web'}, TransientProcessingError('connection reset'), fail_times=1)
        pipeline = make_pipeline(storage=storage)
        generate = mocker.spy(pipeline.processor.generator, 'generate')
        pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        drain(pipeline)

        names = [call.args[1].name for call in generate.call_args_list]
        assert sorted(names) == ['preview', 'thumbnail', 'web', 'web']

    def test_retrying_status_visible_between_attempts(self, make_pipeline, flaky_storage, sample_image_bytes):
        storage = flaky_storage({'web'}, TransientProcessingError('connection reset'))
        pipeline = make_pipeline(storage=storage)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        result = pipeline.processor.process(pipeline.queue.dequeue())

        assert result.outcome == TaskOutcome.RETRYING
        status = pipeline.status.get_status(accepted['image_id'])
        assert status['processing_status'] == 'retrying'
        assert status['processing_errors'] == 'web: connection reset'
        assert status['variants']['web'] == {'status': 'pending', 'url': None, 'error': 'connection reset'}
        assert status['variants']['thumbnail']['status'] == 'completed'

    def test_retry_budget_exhausted(self, make_pipeline, flaky_storage, drain, sample_image_bytes, caplog):
        storage = flaky_storage(
            {'thumbnail', 'web', 'preview'}, TransientProcessingError('connection reset')
        )
        pipeline = make_pipeline(storage=storage)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        with caplog.at_level(logging.ERROR):
            results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.RETRYING, TaskOutcome.RETRYING, TaskOutcome.FAILED]
        record = pipeline.store.get(accepted['image_id'])
        assert record.processing_status == ProcessingStatus.FAILED
        assert record.failed_variants == ['thumbnail', 'web', 'preview']
        assert record.processing_errors == (
            'thumbnail: connection reset; web: connection reset; preview: connection reset'
        )
        assert record.validate() == []
        assert pipeline.queue.pending_count() == 0
        assert 'failed' in caplog.text

    def test_partial_failure_keeps_completed_variants(self, make_pipeline, flaky_storage, drain, sample_image_bytes):
        storage = flaky_storage({'preview'}, TransientProcessingError('timeout'))
        pipeline = make_pipeline(storage=storage, max_attempts=1)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.FAILED]
        status = pipeline.status.get_status(accepted['image_id'])
        assert status['variants']['preview'] == {'status': 'failed', 'url': None, 'error': 'timeout'}
        assert status['variants']['thumbnail']['url']
        assert status['variants']['web']['url']

    def test_task_timeout_is_transient(self, pipeline, drain, sample_image_bytes, clock):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        clock.step = 1.0
        pipeline.processor.clock = clock
        pipeline.processor.task_timeout = 0

        result = pipeline.processor.process(pipeline.queue.dequeue())

        assert result.outcome == TaskOutcome.RETRYING
        record = pipeline.store.get(accepted['image_id'])
        assert record.processing_status == ProcessingStatus.RETRYING
        assert 'exceeded' in record.processing_errors
        assert record.pending_variants == ['thumbnail', 'web', 'preview']


class TestPermanentFailures:
    """Tests for inputs and errors that are not retried."""

    def test_corrupt_upload_fails_once(self, pipeline, drain):
        accepted = pipeline.ingestor.ingest('g1', b'this is not an image', 'image/jpeg')

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.FAILED]
        record = pipeline.store.get(accepted['image_id'])
        assert record.processing_status == ProcessingStatus.FAILED
        assert record.failed_variants == ['thumbnail', 'web', 'preview']
        assert 'Cannot decode' in record.processing_errors

    def test_missing_original_fails(self, pipeline, drain, sample_image_bytes):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        record = pipeline.store.get(accepted['image_id'])
        pipeline.router.delete(record.original)

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.FAILED]
        assert 'original blob is missing' in pipeline.store.get(accepted['image_id']).processing_errors

    def test_storage_quota_fails_without_retry(self, make_pipeline, flaky_storage, drain, sample_image_bytes, caplog):
        storage = flaky_storage({'web'}, StorageQuotaError('Storage quota exceeded: disk full'))
        pipeline = make_pipeline(storage=storage)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        with caplog.at_level(logging.ERROR):
            results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.FAILED]
        record = pipeline.store.get(accepted['image_id'])
        assert record.variants['web'].status == VariantStatus.FAILED
        assert 'quota' in record.processing_errors
        assert any(r.levelno == logging.ERROR and 'quota' in r.getMessage() for r in caplog.records)

    def test_reprocess_after_failure(self, make_pipeline, flaky_storage, drain, sample_image_bytes):
        storage = flaky_storage({'web'}, TransientProcessingError('connection reset'), fail_times=3)
        pipeline = make_pipeline(storage=storage)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        drain(pipeline)
        assert pipeline.store.get(accepted['image_id']).processing_status == ProcessingStatus.FAILED

        pipeline.ingestor.reprocess(accepted['image_id'])
        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.COMPLETED]
        assert pipeline.store.get(accepted['image_id']).processing_status == ProcessingStatus.COMPLETED


class TestRecovery:
    """Tests for redelivery after a worker died mid-task."""

    def test_interrupted_attempt_is_resumed(self, make_pipeline, drain, sample_image_bytes, mocker, clock,
                                            make_image_bytes):
        pipeline = make_pipeline(clock=clock)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        image_id = accepted['image_id']

        # Simulate a worker that started, stored the thumbnail, then died
        pipeline.queue.dequeue()
        record = pipeline.store.get(image_id)
        transition(record, ProcessingStatus.PROCESSING)
        ref = pipeline.router.variant_ref('g1', image_id, 'thumbnail')
        pipeline.router.put(ref.tier, ref.key, make_image_bytes((10, 10), 'WEBP'), 'image/webp')
        record.variants['thumbnail'].mark_completed(ref)
        pipeline.store.update(record)

        clock.advance(pipeline.config.task_timeout + 1)
        task = pipeline.queue.dequeue()
        assert task.attempt == 2

        generate = mocker.spy(pipeline.processor.generator, 'generate')
        result = pipeline.processor.process(task)

        assert result.outcome == TaskOutcome.COMPLETED
        assert sorted(c.args[1].name for c in generate.call_args_list) == ['preview', 'web']
        assert pipeline.queue.pending_count() == 0

    def test_lost_variant_blob_is_regenerated(self, pipeline, drain, sample_image_bytes):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        image_id = accepted['image_id']
        record = pipeline.store.get(image_id)
        ref = pipeline.router.variant_ref('g1', image_id, 'web')
        record.variants['web'].mark_completed(ref)
        pipeline.store.update(record)

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.COMPLETED]
        assert pipeline.router.exists(ref)

    def test_interrupted_past_budget_fails(self, make_pipeline, sample_image_bytes, clock):
        pipeline = make_pipeline(clock=clock, max_attempts=1)
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        pipeline.queue.dequeue()
        record = pipeline.store.get(accepted['image_id'])
        pipeline.store.update(transition(record, ProcessingStatus.PROCESSING))
        clock.advance(pipeline.config.task_timeout + 1)

        result = pipeline.processor.process(pipeline.queue.dequeue())

        assert result.outcome == TaskOutcome.FAILED
        record = pipeline.store.get(accepted['image_id'])
        assert record.processing_status == ProcessingStatus.FAILED
        assert 'did not finish' in record.processing_errors


class _DeletingStorage:
    """Deletes the image just before one variant is written."""

    def __init__(self, inner, name, on_put):
        self.inner = inner
        self.name = name
        self.on_put = on_put

    def put_object(self, tier, key, data, content_type='application/octet-stream'):
        if key.rsplit('/', 1)[-1].startswith(self.name + '.'):
            self.on_put(key)
        return self.inner.put_object(tier, key, data, content_type)

    def __getattr__(self, attr):
        return getattr(self.inner, attr)


class TestConcurrentChanges:
    """Tests for deletes and competing writers during processing."""

    def test_deletion_race_leaves_no_orphans_after_reconcile(
            self, make_pipeline, local_client, drain, sample_image_bytes):
        holder = {}

        def delete_image(key):
            holder['pipeline'].ingestor.delete_image(holder['image_id'])

        storage = _DeletingStorage(local_client, 'web', delete_image)
        pipeline = make_pipeline(storage=storage, max_parallel_variants=1)
        holder['pipeline'] = pipeline
        holder['image_id'] = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')['image_id']

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.ABORTED]
        assert pipeline.queue.pending_count() == 0
        assert pipeline.store.get(holder['image_id']) is None

        stats = pipeline.reconciler().reconcile()

        assert stats.deleted == 1
        for tier in Tier:
            assert list(pipeline.router.list_refs(tier)) == []

    def test_version_conflict_requeues(self, pipeline, drain, sample_image_bytes):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        store = pipeline.store
        generator = pipeline.processor.generator
        real_generate = generator.generate
        competed = []

        def competing_generate(data, spec):
            if not competed:
                competed.append(spec.name)
                store.update(store.get(accepted['image_id']))
            return real_generate(data, spec)

        generator.generate = competing_generate

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.ABORTED, TaskOutcome.COMPLETED]
        assert store.get(accepted['image_id']).processing_status == ProcessingStatus.COMPLETED
        assert pipeline.queue.pending_count() == 0

    def test_conflict_after_lease_expiry_keeps_task(
            self, make_pipeline, flaky_storage, drain, sample_image_bytes, clock, mocker, caplog):
        storage = flaky_storage({'web'}, TransientProcessingError('connection reset'), fail_times=1)
        pipeline = make_pipeline(storage=storage, clock=clock)
        image_id = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')['image_id']

        expired = pipeline.queue.dequeue()
        clock.advance(pipeline.config.task_timeout + 1)
        current = pipeline.queue.dequeue()
        assert current.attempt == 2

        # The expired attempt runs to its end between the current one's read and first write
        real_get = pipeline.store.get
        expired_results = []

        def get_then_finish_expired(requested_id):
            snapshot = real_get(requested_id)
            if not expired_results:
                expired_results.append(None)
                expired_results[0] = pipeline.processor.process(expired)
            return snapshot

        mocker.patch.object(pipeline.store, 'get', side_effect=get_then_finish_expired)

        with caplog.at_level(logging.WARNING):
            result = pipeline.processor.process(current)

        assert expired_results[0].outcome == TaskOutcome.RETRYING
        assert result.outcome == TaskOutcome.ABORTED
        assert 'lost its lease' in caplog.text
        assert pipeline.store.get(image_id).processing_status == ProcessingStatus.RETRYING
        assert pipeline.queue.pending_count() == 1

        results = drain(pipeline)

        assert outcomes(results) == [TaskOutcome.COMPLETED]
        assert pipeline.store.get(image_id).processing_status == ProcessingStatus.COMPLETED
        assert pipeline.queue.pending_count() == 0


class TestConsistencyChecks:
    """Tests for the invariant check on terminal writes."""

    def test_inconsistent_terminal_record_is_logged(self, pipeline, sample_image_bytes, caplog):
        accepted = pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')
        record = pipeline.store.get(accepted['image_id'])
        record.processing_status = ProcessingStatus.COMPLETED

        with caplog.at_level(logging.ERROR):
            pipeline.processor._save(record)

        assert 'completed image has unfinished variants' in caplog.text

    def test_consistent_run_logs_no_errors(self, pipeline, drain, sample_image_bytes, caplog):
        pipeline.ingestor.ingest('g1', sample_image_bytes, 'image/jpeg')

        with caplog.at_level(logging.ERROR):
            drain(pipeline)

        assert 'inconsistent' not in caplog.text
