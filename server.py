#!/usr/bin/env python3

import logging
import os
import time
from functools import wraps
from mimetypes import guess_type

from bottle import Bottle, BaseRequest, HTTPResponse, Response, request, response, static_file

from imagepipe.blob_ref import Tier
from imagepipe.config import PipelineConfig
from imagepipe.errors import (
    InvalidTransitionError,
    NotFoundError,
    ProcessingError,
    RecordGoneError,
    ValidationError,
    VersionConflictError,
)
from imagepipe.local_client import LocalClient, TokenException
from imagepipe.pipeline import Pipeline

app = application = Bottle()

logger = logging.getLogger('imagepipe.server')

# Bodies above this are rejected by the ingestor with a 422
BaseRequest.MEMFILE_MAX = 64 * 1024 * 1024

_pipeline = None


def configure(pipeline):
    """Use the given pipeline for all requests (tests, embedding)."""
    global _pipeline
    _pipeline = pipeline


def get_pipeline() -> Pipeline:
    """Return the configured pipeline, building it from the environment on first use."""
    global _pipeline
    if _pipeline is None:
        _pipeline = Pipeline.from_config(PipelineConfig.from_env(), logger)
    return _pipeline


def get_timestamp():
    """Return an integer timestamp with one second resolution for
    the current moment.
    """
    return int(time.time())


def include_timestamp(func):
    """Decorate a view function to include the X-Timestamp header to help clients
    maintain time synchronization.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        result = func(*args, **kwargs)
        (result if isinstance(result, Response) else response) \
            .set_header('X-Timestamp', str(get_timestamp()))
        return result
    return wrapper


def allow_cross_origin(func):
    """Decorate a view function to allow cross domain access."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            result = func(*args, **kwargs)
        except HTTPResponse as r:
            r.set_header('Access-Control-Allow-Origin', '*')
            raise
        (result if isinstance(result, Response) else response) \
            .set_header('Access-Control-Allow-Origin', '*')
        return result
    return wrapper


def json_error(status, message):
    response.status = status
    return {'error': message}


def read_upload():
    """Return (data, content_type, filename) from a multipart or raw body."""
    if request.content_type.startswith('multipart/form-data'):
        upload = request.files.get('file')
        if upload is None:
            raise ValidationError("Multipart upload needs a 'file' field")
        return upload.file.read(), upload.content_type, upload.raw_filename
    return request.body.read(), request.content_type, request.query.filename or None


@app.route('/galleries/<gallery_id>/images', method='OPTIONS')
@allow_cross_origin
def upload_options(gallery_id):
    response.set_header('Access-Control-Allow-Methods', 'POST, OPTIONS')
    response.set_header('Access-Control-Allow-Headers', 'Content-Type')
    response.content_type = 'text/plain; charset=utf-8'
    return ''


@app.route('/galleries/<gallery_id>/images', method='POST')
@allow_cross_origin
@include_timestamp
def upload_image(gallery_id):
    """Accept an upload; processing continues in the background."""
    pipeline = get_pipeline()
    try:
        data, content_type, filename = read_upload()
        result = pipeline.ingestor.ingest(gallery_id, data, content_type, filename)
    except ValidationError as e:
        logger.info(f"Rejected upload to gallery {gallery_id}: {e}")
        return json_error(422, str(e))
    except ProcessingError as e:
        logger.error(f"Storage unavailable for upload to gallery {gallery_id}: {e}")
        return json_error(503, "Storage unavailable, try again later")

    response.status = 202
    return result


@app.route('/images/status')
@allow_cross_origin
@include_timestamp
def batch_status():
    ids = [i for i in request.query.ids.split(',') if i.strip()]
    if not ids:
        return json_error(400, "Query parameter 'ids' is required")
    return get_pipeline().status.get_statuses(i.strip() for i in ids)


@app.route('/images/<image_id>/status')
@allow_cross_origin
@include_timestamp
def image_status(image_id):
    try:
        return get_pipeline().status.get_status(image_id)
    except NotFoundError as e:
        return json_error(404, str(e))


@app.route('/galleries/<gallery_id>/processing_status')
@allow_cross_origin
@include_timestamp
def gallery_processing_status(gallery_id):
    incomplete_only = request.query.get('all', '').lower() not in ('1', 'true', 'yes')
    return get_pipeline().status.gallery_status(gallery_id, incomplete_only=incomplete_only)


@app.route('/images/<image_id>/reprocess', method='POST')
@include_timestamp
def reprocess_image(image_id):
    try:
        result = get_pipeline().ingestor.reprocess(image_id)
    except (InvalidTransitionError, VersionConflictError) as e:
        return json_error(409, str(e))
    except (NotFoundError, RecordGoneError) as e:
        return json_error(404, str(e))
    response.status = 202
    return result


@app.route('/images/<image_id>', method='DELETE')
@include_timestamp
def delete_image(image_id):
    try:
        deleted = get_pipeline().ingestor.delete_image(image_id)
    except NotFoundError as e:
        return json_error(404, str(e))
    except ProcessingError as e:
        logger.error(f"Storage unavailable while deleting image {image_id}: {e}")
        return json_error(503, "Storage unavailable; leftover blobs are removed by reconcile")
    return {'image_id': image_id, 'deleted_blobs': deleted}


@app.route('/galleries/<gallery_id>', method='DELETE')
@include_timestamp
def delete_gallery(gallery_id):
    try:
        deleted = get_pipeline().ingestor.delete_gallery(gallery_id)
    except ProcessingError as e:
        logger.error(f"Storage unavailable while deleting gallery {gallery_id}: {e}")
        return json_error(503, "Storage unavailable; leftover blobs are removed by reconcile")
    return {'gallery_id': gallery_id, 'deleted_images': deleted}


@app.route('/blobs/<tier>/<key:path>')
@allow_cross_origin
def serve_blob(tier, key):
    """Serve a blob from the local backend to holders of a signed URL."""
    storage = get_pipeline().storage
    if not isinstance(storage, LocalClient):
        return json_error(404, "Blobs are served by the object store")
    try:
        tier = Tier(tier)
        storage.validate_token(request.query.token, tier, key)
        blob_path = storage.path_for(tier, key)
    except ValueError:
        return json_error(404, f"Unknown tier: {tier}")
    except TokenException as e:
        logger.info(f"Refused blob {key}: {e}")
        return json_error(403, str(e))
    except NotFoundError as e:
        return json_error(404, str(e))

    if not os.path.isfile(blob_path):
        return json_error(404, f"Object not found: {key}")
    mime = guess_type(blob_path)[0] or 'application/octet-stream'
    return static_file(os.path.basename(blob_path), root=os.path.dirname(blob_path), mimetype=mime)


@app.route('/')
def main_page():
    return 'imagepipe processing server'


if __name__ == '__main__':
    from bottle import run

    config = PipelineConfig.from_env()
    logging.basicConfig(
        level=logging.getLevelName(config.log_level),
        format='%(asctime)s [%(levelname)s] %(message)s'
    )
    pipeline = Pipeline.from_config(config, logger)
    pipeline.store.create_tables()
    configure(pipeline)

    logger.info("running server...")
    run(app=application,
        host='0.0.0.0',
        port=int(os.getenv('PORT', '8080')),
        server=os.getenv('SERVER', 'wsgiref'),
        debug=config.log_level == 'DEBUG'
    )
    logger.info("Exiting.")
