"""
ImageDb - MySQL-backed state store and job queue.
"""

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import mysql.connector
from mysql.connector import errorcode, pooling
from retrying import retry

from .blob_ref import BlobRef, Tier
from .config import SqlConfig
from .errors import RecordGoneError, VersionConflictError
from .image_record import ImageRecord, ProcessingStatus, VariantRecord
from .job_queue import JobQueue, Task
from .state_store import StateStore

TABLES = {
    'images': (
        "CREATE TABLE IF NOT EXISTS `images` ("
        "  image_id CHAR(32) NOT NULL PRIMARY KEY,"
        "  gallery_id VARCHAR(64) NOT NULL,"
        "  position INT NOT NULL,"
        "  original_key VARCHAR(500) NOT NULL,"
        "  original_tier VARCHAR(8) NOT NULL,"
        "  content_type VARCHAR(100) NOT NULL,"
        "  format VARCHAR(20),"
        "  byte_size BIGINT NOT NULL,"
        "  width INT,"
        "  height INT,"
        "  processing_status VARCHAR(16) NOT NULL,"
        "  variants JSON NOT NULL,"
        "  processing_started_at DATETIME(6),"
        "  processing_completed_at DATETIME(6),"
        "  processing_errors TEXT,"
        "  filename VARCHAR(2000),"
        "  created_at DATETIME(6) NOT NULL,"
        "  version INT NOT NULL,"
        "  UNIQUE KEY gallery_position (gallery_id, position),"
        "  KEY processing_status (processing_status)"
        ") ENGINE=InnoDB"
    ),
    'gallery_positions': (
        "CREATE TABLE IF NOT EXISTS `gallery_positions` ("
        "  gallery_id VARCHAR(64) NOT NULL PRIMARY KEY,"
        "  next_position INT NOT NULL"
        ") ENGINE=InnoDB"
    ),
    'processing_jobs': (
        "CREATE TABLE IF NOT EXISTS `processing_jobs` ("
        "  id BIGINT NOT NULL AUTO_INCREMENT PRIMARY KEY,"
        "  task_id CHAR(32) NOT NULL,"
        "  image_id CHAR(32) NOT NULL,"
        "  attempt INT NOT NULL,"
        "  available_at DATETIME(6) NOT NULL,"
        "  leased_until DATETIME(6),"
        "  receipt CHAR(32),"
        "  UNIQUE KEY task_id (task_id),"
        "  KEY available_at (available_at)"
        ") ENGINE=InnoDB"
    ),
}

IMAGE_COLUMNS = (
    'image_id', 'gallery_id', 'position', 'original_key', 'original_tier',
    'content_type', 'format', 'byte_size', 'width', 'height', 'processing_status',
    'variants', 'processing_started_at', 'processing_completed_at',
    'processing_errors', 'filename', 'created_at', 'version',
)

SELECT_IMAGE = f"SELECT {', '.join(IMAGE_COLUMNS)} FROM images"


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """DATETIME columns hold naive UTC."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    return value.replace(tzinfo=timezone.utc) if value else None


def _is_connection_error(exception: Exception) -> bool:
    return isinstance(exception, mysql.connector.Error)


class ImageDb(StateStore, JobQueue):
    """
    State store and job queue on one MySQL database.

    Records are updated with ``WHERE version = %s`` so concurrent writers
    lose cleanly. Jobs are leased with ``SELECT ... FOR UPDATE SKIP LOCKED``
    so several worker processes can share the queue.
    """

    def __init__(
        self,
        config: SqlConfig,
        visibility_timeout: float = 300,
        poll_interval: float = 0.5,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize database access. The connection pool is created lazily.

        Args:
            config: MySQL settings
            visibility_timeout: Seconds a dequeued job stays leased
            poll_interval: Seconds between polls while waiting in dequeue
            logger: Optional logger instance
        """
        self.config = config
        self.pool_size = config.pool_size
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)
        self.connection_pool = None

    def initialize_pool(self):
        """
        Initialize the connection pool lazily if it hasn't been created yet.
        """
        if not self.connection_pool:
            self.logger.debug("Initializing connection pool...")
            try:
                self.connection_pool = pooling.MySQLConnectionPool(
                    pool_name="imagepipe_pool",
                    pool_size=self.pool_size,
                    user=self.config.user,
                    password=self.config.password,
                    host=self.config.host,
                    port=self.config.port,
                    database=self.config.database,
                )
                self.logger.debug("Connection pool initialized.")
            except mysql.connector.Error as err:
                self.logger.error(f"Failed to initialize connection pool: {err}")
                raise

    @retry(retry_on_exception=_is_connection_error, stop_max_attempt_number=3, wait_exponential_multiplier=1000)
    def get_cursor(self, dictionary: bool = False):
        """
        Get a connection from the pool and create a cursor.
        """
        try:
            self.initialize_pool()
            connection = self.connection_pool.get_connection()
            return connection.cursor(buffered=True, dictionary=dictionary), connection
        except mysql.connector.Error as e:
            self.logger.warning(f"Error getting cursor: {e}")
            raise

    def close_connection(self, connection):
        """
        Return a connection to the pool.
        """
        if connection:
            try:
                connection.close()
            except mysql.connector.Error as e:
                self.logger.warning(f"Error closing connection: {e}")

    def create_tables(self):
        """
        Create the required database tables if they do not exist.
        """
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            for table_name, table_description in TABLES.items():
                try:
                    self.logger.info(f"Creating table {table_name}...")
                    cursor.execute(table_description)
                except mysql.connector.Error as err:
                    if err.errno == errorcode.ER_TABLE_EXISTS_ERROR:
                        self.logger.info(f"Table {table_name} already exists.")
                    else:
                        self.logger.error(f"Error creating table {table_name}: {err}")
                        raise
            connection.commit()
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    # --- State store -------------------------------------------------------

    @staticmethod
    def _record_params(record: ImageRecord) -> dict:
        return {
            'image_id': record.image_id,
            'gallery_id': record.gallery_id,
            'position': record.position,
            'original_key': record.original.key,
            'original_tier': record.original.tier.value,
            'content_type': record.content_type,
            'format': record.format,
            'byte_size': record.byte_size,
            'width': record.width,
            'height': record.height,
            'processing_status': record.processing_status.value,
            'variants': json.dumps({name: v.to_dict() for name, v in record.variants.items()}),
            'processing_started_at': _to_db_time(record.processing_started_at),
            'processing_completed_at': _to_db_time(record.processing_completed_at),
            'processing_errors': record.processing_errors,
            'filename': record.filename,
            'created_at': _to_db_time(record.created_at),
            'version': record.version,
        }

    @staticmethod
    def _row_to_record(row: dict) -> ImageRecord:
        variants = row['variants']
        if isinstance(variants, (bytes, bytearray)):
            variants = variants.decode()
        if isinstance(variants, str):
            variants = json.loads(variants)
        return ImageRecord(
            image_id=row['image_id'],
            gallery_id=row['gallery_id'],
            position=row['position'],
            original=BlobRef(key=row['original_key'], tier=Tier(row['original_tier'])),
            content_type=row['content_type'],
            format=row['format'],
            byte_size=row['byte_size'],
            width=row['width'],
            height=row['height'],
            processing_status=ProcessingStatus(row['processing_status']),
            variants={name: VariantRecord.from_dict(v) for name, v in variants.items()},
            processing_started_at=_from_db_time(row['processing_started_at']),
            processing_completed_at=_from_db_time(row['processing_completed_at']),
            processing_errors=row['processing_errors'],
            filename=row['filename'],
            created_at=_from_db_time(row['created_at']),
            version=row['version'],
        )

    def create(self, record: ImageRecord) -> ImageRecord:
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(
                "INSERT INTO gallery_positions (gallery_id, next_position) "
                "VALUES (%s, LAST_INSERT_ID(1)) "
                "ON DUPLICATE KEY UPDATE next_position = LAST_INSERT_ID(next_position + 1)",
                (record.gallery_id,)
            )
            cursor.execute("SELECT LAST_INSERT_ID()")
            record.position = cursor.fetchone()[0]
            record.version = 1

            placeholders = ', '.join(f"%({c})s" for c in IMAGE_COLUMNS)
            cursor.execute(
                f"INSERT INTO images ({', '.join(IMAGE_COLUMNS)}) VALUES ({placeholders})",
                self._record_params(record)
            )
            connection.commit()
            self.logger.debug(f"Created image {record.image_id} at position {record.position}")
            return record
        except mysql.connector.Error as e:
            self.logger.error(f"Error inserting image record: {e}")
            if connection:
                connection.rollback()
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    def _fetch_records(self, where_clause: str, params: tuple) -> List[ImageRecord]:
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor(dictionary=True)
            cursor.execute(f"{SELECT_IMAGE} {where_clause}", params)
            return [self._row_to_record(row) for row in cursor.fetchall()]
        except mysql.connector.Error as e:
            self.logger.error(f"Error fetching records: {e}")
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    def get(self, image_id: str) -> Optional[ImageRecord]:
        records = self._fetch_records("WHERE image_id = %s", (image_id,))
        return records[0] if records else None

    def list_by_gallery(self, gallery_id: str) -> List[ImageRecord]:
        return self._fetch_records("WHERE gallery_id = %s ORDER BY position", (gallery_id,))

    def update(self, record: ImageRecord) -> ImageRecord:
        params = self._record_params(record)
        assignments = ', '.join(
            f"{c} = %({c})s" for c in IMAGE_COLUMNS if c not in ('image_id', 'version')
        )
        sql = (
            f"UPDATE images SET {assignments}, version = version + 1 "
            f"WHERE image_id = %(image_id)s AND version = %(version)s"
        )

        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(sql, params)
            updated = cursor.rowcount
            connection.commit()
        except mysql.connector.Error as e:
            self.logger.error(f"Error updating image {record.image_id}: {e}")
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

        if updated == 0:
            if self.exists(record.image_id):
                raise VersionConflictError(
                    f"Image {record.image_id} changed since version {record.version}"
                )
            raise RecordGoneError(f"Image {record.image_id} no longer exists")
        record.version += 1
        return record

    def delete(self, image_id: str) -> Optional[ImageRecord]:
        record = self.get(image_id)
        if record is None:
            return None
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute("DELETE FROM images WHERE image_id = %s", (image_id,))
            deleted = cursor.rowcount
            connection.commit()
        except mysql.connector.Error as e:
            self.logger.error(f"Error deleting image record: {e}")
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)
        return record if deleted else None

    def _scalar(self, sql: str, params: tuple = ()):
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(sql, params)
            row = cursor.fetchone()
            return row[0] if row else None
        except mysql.connector.Error as e:
            self.logger.error(f"Error executing query: {e}")
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    def exists(self, image_id: str) -> bool:
        return self._scalar("SELECT COUNT(*) FROM images WHERE image_id = %s", (image_id,)) > 0

    def list_ids(self) -> List[str]:
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute("SELECT image_id FROM images ORDER BY created_at")
            return [row[0] for row in cursor.fetchall()]
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    # --- Job queue ---------------------------------------------------------

    def enqueue(self, image_id: str, delay: float = 0) -> Task:
        task = Task(task_id=uuid.uuid4().hex, image_id=image_id, attempt=1)
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(
                "INSERT INTO processing_jobs (task_id, image_id, attempt, available_at) "
                "VALUES (%s, %s, %s, TIMESTAMPADD(MICROSECOND, %s, UTC_TIMESTAMP(6)))",
                (task.task_id, image_id, task.attempt, int(delay * 1_000_000))
            )
            connection.commit()
        except mysql.connector.Error as e:
            self.logger.error(f"Error enqueueing image {image_id}: {e}")
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)
        return task

    def _lease_next(self) -> Optional[Task]:
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(
                "SELECT task_id, image_id, attempt, leased_until FROM processing_jobs "
                "WHERE available_at <= UTC_TIMESTAMP(6) "
                "AND (leased_until IS NULL OR leased_until <= UTC_TIMESTAMP(6)) "
                "ORDER BY available_at, id LIMIT 1 FOR UPDATE SKIP LOCKED"
            )
            row = cursor.fetchone()
            if row is None:
                connection.commit()
                return None

            task_id, image_id, attempt, leased_until = row
            if leased_until is not None:
                attempt += 1
                self.logger.warning(
                    f"Lease on task {task_id} expired; redelivering image {image_id} (attempt {attempt})"
                )
            receipt = uuid.uuid4().hex
            cursor.execute(
                "UPDATE processing_jobs SET attempt = %s, receipt = %s, "
                "leased_until = TIMESTAMPADD(MICROSECOND, %s, UTC_TIMESTAMP(6)) "
                "WHERE task_id = %s",
                (attempt, receipt, int(self.visibility_timeout * 1_000_000), task_id)
            )
            connection.commit()
            return Task(task_id=task_id, image_id=image_id, attempt=attempt, receipt=receipt)
        except mysql.connector.Error as e:
            self.logger.error(f"Error leasing job: {e}")
            if connection:
                connection.rollback()
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)

    def dequeue(self, timeout: float = 0) -> Optional[Task]:
        deadline = time.monotonic() + timeout
        while True:
            task = self._lease_next()
            if task is not None:
                return task
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(remaining, self.poll_interval))

    def _execute_for_task(self, sql: str, params: tuple, task: Task) -> bool:
        cursor, connection = None, None
        try:
            cursor, connection = self.get_cursor()
            cursor.execute(sql, params)
            changed = cursor.rowcount
            connection.commit()
        except mysql.connector.Error as e:
            self.logger.error(f"Error updating job {task.task_id}: {e}")
            raise
        finally:
            if cursor:
                cursor.close()
            if connection:
                self.close_connection(connection)
        if not changed:
            self.logger.warning(f"Ignoring stale receipt for task {task.task_id}")
        return bool(changed)

    def ack(self, task: Task) -> bool:
        return self._execute_for_task(
            "DELETE FROM processing_jobs WHERE task_id = %s AND receipt = %s",
            (task.task_id, task.receipt),
            task
        )

    def requeue(self, task: Task, delay: float = 0) -> bool:
        return self._execute_for_task(
            "UPDATE processing_jobs SET attempt = attempt + 1, receipt = NULL, leased_until = NULL, "
            "available_at = TIMESTAMPADD(MICROSECOND, %s, UTC_TIMESTAMP(6)) "
            "WHERE task_id = %s AND receipt = %s",
            (int(delay * 1_000_000), task.task_id, task.receipt),
            task
        )

    def pending_count(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM processing_jobs") or 0
