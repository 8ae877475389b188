"""
Pytest fixtures for imagepipe tests.
"""

import io
import json
import logging
from wsgiref.util import setup_testing_defaults

import pytest
from PIL import Image


def _encode_image(size=(100, 100), fmt='JPEG', mode='RGB', color='red', exif=None):
    """Encode a solid image of the given size and format."""
    img = Image.new(mode, size, color=color)
    buffer = io.BytesIO()
    options = {}
    if exif is not None:
        options['exif'] = exif
    img.save(buffer, format=fmt, **options)
    return buffer.getvalue()


class FlakyStorage:
    """
    Storage client wrapper that fails ``put_object`` for chosen names.

    Names are matched against the file name of the key without extension
    ('web', 'original', ...). Every other call goes to the wrapped client.
    """

    def __init__(self, inner, names, error, fail_times=None):
        self.inner = inner
        self.names = set(names)
        self.error = error
        self.fail_times = fail_times
        self.failures = 0

    def put_object(self, tier, key, data, content_type='application/octet-stream'):
        name = key.rsplit('/', 1)[-1].split('.')[0]
        if name in self.names and (self.fail_times is None or self.failures < self.fail_times):
            self.failures += 1
            raise self.error
        return self.inner.put_object(tier, key, data, content_type)

    def __getattr__(self, attr):
        return getattr(self.inner, attr)


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start=1000.0, step=0.0):
        self.now = start
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value

    def advance(self, seconds):
        self.now += seconds


class WsgiResponse:
    def __init__(self, status, headers, body):
        self.status = status
        self.headers = headers
        self.body = body

    @property
    def json(self):
        return json.loads(self.body.decode())


def _call_wsgi(app, method, path, body=b'', content_type='', query=''):
    """Call a WSGI app directly and collect the response."""
    environ = {}
    setup_testing_defaults(environ)
    environ.update({
        'REQUEST_METHOD': method,
        'PATH_INFO': path,
        'QUERY_STRING': query,
        'CONTENT_TYPE': content_type,
        'CONTENT_LENGTH': str(len(body)),
        'wsgi.input': io.BytesIO(body),
    })
    captured = {}

    def start_response(status, headers, exc_info=None):
        captured['status'] = int(status.split()[0])
        captured['headers'] = dict(headers)

    result = app(environ, start_response)
    try:
        data = b''.join(result)
    finally:
        if hasattr(result, 'close'):
            result.close()
    return WsgiResponse(captured['status'], captured['headers'], data)


@pytest.fixture
def logger():
    """Fixture providing a logger."""
    return logging.getLogger('test')


@pytest.fixture
def s3_config():
    """Fixture providing S3 configuration."""
    from imagepipe.s3_config import S3Config

    return S3Config(
        endpoint='https://test-endpoint.example.com:9000',
        bucket='test-bucket',
        prefix='galleries-store',
        access_key='test-access-key',
        secret_key='test-secret-key',
        region='us-east-1',
    )


@pytest.fixture
def mock_boto3_client(mocker):
    """Fixture providing a mocked boto3 client."""
    mock_client = mocker.MagicMock()
    mocker.patch('imagepipe.s3_client.boto3.client', return_value=mock_client)
    return mock_client


@pytest.fixture
def sample_image_bytes():
    """Fixture providing sample JPEG image bytes."""
    return _encode_image((100, 100), 'JPEG')


@pytest.fixture
def sample_png_bytes():
    """Fixture providing sample PNG image bytes with transparency."""
    return _encode_image((100, 100), 'PNG', mode='RGBA', color=(255, 0, 0, 128))


@pytest.fixture
def large_jpeg_bytes():
    """Fixture providing a 4000x3000 JPEG, the size of a typical camera original."""
    return _encode_image((4000, 3000), 'JPEG', color=(30, 90, 160))


@pytest.fixture
def local_config(tmp_path):
    """Fixture providing a local storage configuration in a temp dir."""
    from imagepipe.local_client import LocalConfig

    return LocalConfig(
        root_path=str(tmp_path),
        prefix='imagepipe',
        base_url='http://testserver',
        signing_key='test-signing-key',
    )


@pytest.fixture
def local_client(local_config, logger):
    """Fixture providing a LocalClient."""
    from imagepipe.local_client import LocalClient

    return LocalClient(local_config, logger)


@pytest.fixture
def router(local_client, logger):
    """Fixture providing a StorageRouter over the local backend."""
    from imagepipe.storage_router import StorageRouter
    from imagepipe.variant_spec import variant_map

    return StorageRouter(local_client, variant_map(), logger)


@pytest.fixture
def pipeline_config(tmp_path):
    """Fixture providing a pipeline configuration for fast local runs."""
    from imagepipe.config import PipelineConfig

    return PipelineConfig(
        storage_backend='local',
        local_root=str(tmp_path),
        local_prefix='imagepipe',
        blob_base_url='http://testserver',
        signing_key='test-signing-key',
        max_attempts=3,
        backoff_base=0,
        backoff_max=0,
        task_timeout=60,
        worker_count=2,
        max_parallel_variants=2,
        signed_url_ttl=600,
    )


@pytest.fixture
def pipeline(pipeline_config, local_client, logger):
    """Fixture providing an in-memory pipeline over local storage."""
    from imagepipe.pipeline import Pipeline

    return Pipeline.in_memory(pipeline_config, storage=local_client, logger=logger)


@pytest.fixture
def make_pipeline(pipeline_config, local_client, logger):
    """Fixture building pipelines with a custom storage client or config."""
    from imagepipe.job_queue import MemoryJobQueue
    from imagepipe.pipeline import Pipeline
    from imagepipe.state_store import MemoryStateStore

    def factory(storage=None, clock=None, **overrides):
        for name, value in overrides.items():
            setattr(pipeline_config, name, value)
        queue_options = {'clock': clock} if clock else {}
        return Pipeline(
            pipeline_config,
            storage or local_client,
            MemoryStateStore(logger),
            MemoryJobQueue(visibility_timeout=pipeline_config.task_timeout, logger=logger, **queue_options),
            logger=logger,
        )

    return factory


@pytest.fixture
def drain():
    """Fixture providing a function that processes queued tasks until none are ready."""
    def run(pipeline, max_tasks=50):
        results = []
        for _ in range(max_tasks):
            task = pipeline.queue.dequeue(timeout=0)
            if task is None:
                break
            results.append(pipeline.processor.process(task))
        return results

    return run


@pytest.fixture
def make_image_bytes():
    """Fixture providing a function that encodes a solid test image."""
    return _encode_image


@pytest.fixture
def flaky_storage(local_client):
    """Fixture building FlakyStorage wrappers around the local client."""
    def factory(names, error, fail_times=None):
        return FlakyStorage(local_client, names, error, fail_times)

    return factory


@pytest.fixture
def clock():
    """Fixture providing a FakeClock."""
    return FakeClock()


@pytest.fixture
def wsgi_request():
    """Fixture providing a function that calls a WSGI app directly."""
    return _call_wsgi
