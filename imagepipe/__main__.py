"""
Main entry point for running the package as a module.

Usage:
    python -m imagepipe init-db
    python -m imagepipe worker --workers 4
    python -m imagepipe status <image_id>
"""

import sys
from .cli import main

if __name__ == '__main__':
    sys.exit(main())
