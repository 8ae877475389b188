"""Tests for ImageDb, the MySQL state store and job queue."""

from datetime import datetime

import mysql.connector
import pytest

from imagepipe.blob_ref import BlobRef, Tier
from imagepipe.config import SqlConfig
from imagepipe.errors import RecordGoneError, VersionConflictError
from imagepipe.image_db import TABLES, ImageDb
from imagepipe.image_record import ImageRecord, ProcessingStatus
from imagepipe.job_queue import Task


def new_record():
    record = ImageRecord.new(
        image_id='abc',
        gallery_id='g1',
        original=BlobRef('galleries/g1/images/abc/original.jpg', Tier.COLD),
        content_type='image/jpeg',
        byte_size=123,
        variant_names=['thumbnail', 'web'],
        filename='a.jpg',
    )
    record.variants['web'].mark_completed(BlobRef('galleries/g1/images/abc/web.webp', Tier.HOT))
    return record


@pytest.fixture
def connection(mocker):
    """Fixture providing a mocked pooled connection and its cursor."""
    cursor = mocker.MagicMock()
    connection = mocker.MagicMock()
    connection.cursor.return_value = cursor
    pool = mocker.MagicMock()
    pool.get_connection.return_value = connection
    mocker.patch('imagepipe.image_db.pooling.MySQLConnectionPool', return_value=pool)
    return connection


@pytest.fixture
def db(connection, logger):
    config = SqlConfig(user='imagepipe', password='secret', database='images', pool_size=4)
    return ImageDb(config, visibility_timeout=30, logger=logger)


class TestConnections:
    """Tests for pooling and table setup."""

    def test_pool_created_lazily(self, db, connection):
        connection.cursor.return_value.fetchone.return_value = (1,)
        assert db.connection_pool is None

        db.exists('abc')

        assert db.connection_pool is not None
        connection.cursor.assert_called_with(buffered=True, dictionary=False)
        connection.close.assert_called()

    def test_pool_failure_raises(self, db, mocker):
        mocker.patch('imagepipe.image_db.pooling.MySQLConnectionPool',
                     side_effect=mysql.connector.Error('refused'))

        with pytest.raises(mysql.connector.Error):
            db.initialize_pool()

    def test_create_tables(self, db, connection):
        cursor = connection.cursor.return_value

        db.create_tables()

        assert cursor.execute.call_count == len(TABLES)
        connection.commit.assert_called_once()
        cursor.close.assert_called_once()


class TestStateStore:
    """Tests for record persistence."""

    def test_create_assigns_position(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.fetchone.return_value = (7,)

        record = db.create(new_record())

        assert record.position == 7
        assert record.version == 1
        insert_sql, params = cursor.execute.call_args_list[-1].args
        assert insert_sql.startswith('INSERT INTO images')
        assert params['position'] == 7
        assert params['original_tier'] == 'cold'
        connection.commit.assert_called_once()

    def test_create_rolls_back_on_error(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.execute.side_effect = mysql.connector.Error('duplicate')

        with pytest.raises(mysql.connector.Error):
            db.create(new_record())

        connection.rollback.assert_called_once()
        connection.close.assert_called()

    def test_row_round_trip(self, db, connection):
        record = new_record()
        record.position = 3
        record.version = 2
        cursor = connection.cursor.return_value
        cursor.fetchall.return_value = [ImageDb._record_params(record)]

        loaded = db.get('abc')

        assert loaded == record
        connection.cursor.assert_called_with(buffered=True, dictionary=True)

    def test_get_missing(self, db, connection):
        connection.cursor.return_value.fetchall.return_value = []

        assert db.get('abc') is None

    def test_update_bumps_version(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.rowcount = 1
        record = new_record()
        record.version = 4

        db.update(record)

        sql, params = cursor.execute.call_args.args
        assert 'WHERE image_id = %(image_id)s AND version = %(version)s' in sql
        assert params['version'] == 4
        assert record.version == 5

    def test_update_conflict(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.rowcount = 0
        cursor.fetchone.return_value = (1,)

        with pytest.raises(VersionConflictError):
            db.update(new_record())

    def test_update_deleted_record(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.rowcount = 0
        cursor.fetchone.return_value = (0,)

        with pytest.raises(RecordGoneError) as excinfo:
            db.update(new_record())
        assert not isinstance(excinfo.value, VersionConflictError)


class TestJobQueue:
    """Tests for the table-backed queue."""

    def test_enqueue(self, db, connection):
        cursor = connection.cursor.return_value

        task = db.enqueue('abc', delay=2.5)

        assert task.attempt == 1
        params = cursor.execute.call_args.args[1]
        assert params == (task.task_id, 'abc', 1, 2_500_000)

    def test_dequeue_first_delivery(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.fetchone.return_value = ('t1', 'abc', 1, None)

        task = db.dequeue()

        assert (task.task_id, task.image_id, task.attempt) == ('t1', 'abc', 1)
        assert task.receipt
        assert 'SKIP LOCKED' in cursor.execute.call_args_list[0].args[0]
        update_params = cursor.execute.call_args_list[1].args[1]
        assert update_params == (1, task.receipt, 30_000_000, 't1')

    def test_dequeue_expired_lease_counts_attempt(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.fetchone.return_value = ('t1', 'abc', 1, datetime(2024, 1, 1))

        task = db.dequeue()

        assert task.attempt == 2

    def test_dequeue_empty(self, db, connection):
        connection.cursor.return_value.fetchone.return_value = None

        assert db.dequeue() is None

    def test_stale_ack(self, db, connection):
        connection.cursor.return_value.rowcount = 0

        assert db.ack(Task('t1', 'abc', 1, 'old')) is False

    def test_requeue(self, db, connection):
        cursor = connection.cursor.return_value
        cursor.rowcount = 1

        assert db.requeue(Task('t1', 'abc', 1, 'r1'), delay=10) is True
        assert cursor.execute.call_args.args[1] == (10_000_000, 't1', 'r1')

    def test_pending_count(self, db, connection):
        connection.cursor.return_value.fetchone.return_value = (3,)

        assert db.pending_count() == 3


def test_status_values_fit_column():
    assert max(len(s.value) for s in ProcessingStatus) <= 16
