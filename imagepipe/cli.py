"""
Command Line Interface for the image processing pipeline.
"""

import argparse
import json
import logging
import signal
from typing import List, Optional, Tuple

import urllib3

from .config import PipelineConfig
from .errors import InvalidTransitionError, NotFoundError
from .pipeline import Pipeline


def setup_logging(verbose: bool, level_name: str = 'INFO') -> logging.Logger:
    """Configure logging."""
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    logging.getLogger('boto3').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.WARNING)
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logging.getLogger('imagepipe')


def get_config(args: argparse.Namespace) -> PipelineConfig:
    """Get pipeline configuration from environment and CLI overrides."""
    config = PipelineConfig.from_env()

    if getattr(args, 'local_root', None):
        config.storage_backend = 'local'
        config.local_root = args.local_root
    if getattr(args, 'local_prefix', None):
        config.local_prefix = args.local_prefix
    if getattr(args, 's3_endpoint', None):
        config.s3.endpoint = args.s3_endpoint
    if getattr(args, 's3_bucket', None):
        config.s3.bucket = args.s3_bucket
    if getattr(args, 's3_prefix', None):
        config.s3.prefix = args.s3_prefix
    if getattr(args, 's3_access_key', None):
        config.s3.access_key = args.s3_access_key
    if getattr(args, 's3_secret_key', None):
        config.s3.secret_key = args.s3_secret_key
    if getattr(args, 'sql_host', None):
        config.sql.host = args.sql_host
    if getattr(args, 'sql_database', None):
        config.sql.database = args.sql_database

    return config


def start(args: argparse.Namespace) -> Tuple[logging.Logger, Optional[Pipeline]]:
    """Read configuration, set up logging at its level and build the pipeline (None if invalid)."""
    config = get_config(args)
    logger = setup_logging(args.verbose, config.log_level)
    if config.storage_backend == 's3' and not config.s3.verify_ssl:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    try:
        return logger, Pipeline.from_config(config, logger)
    except ValueError:
        return logger, None


def add_storage_arguments(parser: argparse.ArgumentParser) -> None:
    """Add storage and database arguments to a parser."""
    local_group = parser.add_argument_group('Local Storage')
    local_group.add_argument('--local-root', metavar='PATH',
                             help='Use local filesystem instead of S3')
    local_group.add_argument('--local-prefix',
                             help='Prefix within local root (default: imagepipe)')

    s3_group = parser.add_argument_group('S3 Storage')
    s3_group.add_argument('--s3-endpoint', help='Override S3_ENDPOINT')
    s3_group.add_argument('--s3-bucket', help='Override S3_BUCKET')
    s3_group.add_argument('--s3-prefix', help='Override S3_PREFIX')
    s3_group.add_argument('--s3-access-key', help='Override S3_ACCESS_KEY')
    s3_group.add_argument('--s3-secret-key', help='Override S3_SECRET_KEY')

    sql_group = parser.add_argument_group('Database')
    sql_group.add_argument('--sql-host', help='Override SQL_HOST')
    sql_group.add_argument('--sql-database', help='Override SQL_DATABASE')


def cmd_init_db(args: argparse.Namespace) -> int:
    """Create database tables."""
    logger, pipeline = start(args)
    if pipeline is None:
        return 1

    try:
        pipeline.store.create_tables()
        logger.info("Database tables ready")
        return 0
    except Exception as e:
        logger.exception(f"Creating tables failed: {e}")
        return 1


def cmd_worker(args: argparse.Namespace) -> int:
    """Run a worker pool until stopped."""
    logger, pipeline = start(args)
    if pipeline is None:
        return 1

    pool = pipeline.worker_pool(
        worker_count=args.workers,
        limit=args.limit,
        poll_interval=args.poll_interval
    )

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping after current tasks")
        pool.stop()

    previous_handler = signal.signal(signal.SIGTERM, handle_signal)

    if args.limit:
        logger.info(f"Test mode: limiting to {args.limit} tasks")

    try:
        stats = pool.run(drain=args.drain)
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
    if not args.quiet:
        print(json.dumps(stats.to_dict(), indent=2))
    return 0 if stats.errors == 0 else 1


def cmd_status(args: argparse.Namespace) -> int:
    """Print processing status of images or a gallery."""
    logger, pipeline = start(args)
    if pipeline is None:
        return 1

    if args.gallery:
        result = pipeline.status.gallery_status(args.gallery, incomplete_only=not args.all)
    elif len(args.image_ids) == 1:
        try:
            result = pipeline.status.get_status(args.image_ids[0])
        except NotFoundError as e:
            logger.error(str(e))
            return 1
    elif args.image_ids:
        result = pipeline.status.get_statuses(args.image_ids)
    else:
        logger.error("Give one or more image ids, or --gallery")
        return 1

    print(json.dumps(result, indent=2))
    return 0


def cmd_reprocess(args: argparse.Namespace) -> int:
    """Re-trigger processing of failed images."""
    logger, pipeline = start(args)
    if pipeline is None:
        return 1

    exit_code = 0
    for image_id in args.image_ids:
        try:
            pipeline.ingestor.reprocess(image_id)
            print(f"  [OK] {image_id} -> retrying")
        except (NotFoundError, InvalidTransitionError) as e:
            print(f"  [ERROR] {image_id} -> {e}")
            exit_code = 1
    return exit_code


def cmd_reconcile(args: argparse.Namespace) -> int:
    """Delete blobs whose image record no longer exists."""
    logger, pipeline = start(args)
    if pipeline is None:
        return 1

    try:
        stats = pipeline.reconciler(dry_run=args.dry_run).reconcile()
    except Exception as e:
        logger.exception(f"Reconcile failed: {e}")
        return 1

    print(json.dumps(stats.to_dict(), indent=2))
    return 0 if stats.errors == 0 else 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog='imagepipe',
        description='Asynchronous image variant processing for photographer galleries',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Typical use:
  1. Setup:    python -m imagepipe init-db
  2. Workers:  python -m imagepipe worker --workers 4
  3. Inspect:  python -m imagepipe status <image_id> | --gallery <gallery_id>
  4. Repair:   python -m imagepipe reprocess <image_id>
               python -m imagepipe reconcile --dry-run

Storage options:
  Use --local-root for local filesystem, or S3 environment variables for S3.
"""
    )

    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    init_parser = subparsers.add_parser('init-db', help='Create database tables')
    init_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    add_storage_arguments(init_parser)

    worker_parser = subparsers.add_parser('worker', help='Run a worker pool')
    worker_parser.add_argument('-w', '--workers', type=int, help='Worker threads (default: WORKER_COUNT)')
    worker_parser.add_argument('--limit', type=int, metavar='N', help='Stop after N tasks (for testing)')
    worker_parser.add_argument('--drain', action='store_true', help='Exit once the queue is empty')
    worker_parser.add_argument('--poll-interval', type=float, default=1.0,
                               help='Seconds to wait on an empty queue')
    worker_parser.add_argument('-q', '--quiet', action='store_true', help='Suppress the summary')
    worker_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    add_storage_arguments(worker_parser)

    status_parser = subparsers.add_parser('status', help='Show processing status')
    status_parser.add_argument('image_ids', nargs='*', help='Image id(s)')
    status_parser.add_argument('-g', '--gallery', help='Show images of a gallery instead')
    status_parser.add_argument('-a', '--all', action='store_true',
                               help='With --gallery, include completed images')
    status_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    add_storage_arguments(status_parser)

    reprocess_parser = subparsers.add_parser('reprocess', help='Re-trigger failed images')
    reprocess_parser.add_argument('image_ids', nargs='+', help='Image id(s)')
    reprocess_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    add_storage_arguments(reprocess_parser)

    reconcile_parser = subparsers.add_parser('reconcile', help='Delete orphaned blobs')
    reconcile_parser.add_argument('-n', '--dry-run', action='store_true', help='Show what would be deleted')
    reconcile_parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    add_storage_arguments(reconcile_parser)

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'init-db':
        return cmd_init_db(parsed_args)
    elif parsed_args.command == 'worker':
        return cmd_worker(parsed_args)
    elif parsed_args.command == 'status':
        return cmd_status(parsed_args)
    elif parsed_args.command == 'reprocess':
        return cmd_reprocess(parsed_args)
    elif parsed_args.command == 'reconcile':
        return cmd_reconcile(parsed_args)

    return 1
