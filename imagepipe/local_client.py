"""
LocalClient - Filesystem storage backend with HMAC-signed download URLs.
"""

import errno
import hmac
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Iterator, List, Optional
from urllib.parse import quote

from .blob_ref import Tier
from .errors import NotFoundError, StorageQuotaError, TransientProcessingError


class TokenException(Exception):
    """Raised when a download token is invalid for some reason."""


@dataclass
class LocalConfig:
    """
    Local filesystem configuration.

    Attributes:
        root_path: Directory holding all tiers
        prefix: Subdirectory within root_path
        base_url: Public URL of the server that serves /blobs
        signing_key: Secret used to sign download URLs
    """
    root_path: str
    prefix: str = 'imagepipe'
    base_url: str = 'http://localhost:8080'
    signing_key: Optional[str] = None

    def validate(self) -> List[str]:
        """Return a list of configuration errors (empty if valid)."""
        errors = []
        if not self.root_path:
            errors.append("Local root path is required")
        elif not os.path.isdir(self.root_path):
            errors.append(f"Local root path does not exist: {self.root_path}")
        if not self.signing_key:
            errors.append("SIGNING_KEY is required to sign local download URLs")
        return errors


class LocalClient:
    """
    Stores blobs as files under ``<root>/<prefix>/<tier>/<key>``.

    Writes go through a temporary file and an atomic rename, so readers never
    see a partially written blob.
    """

    QUOTA_ERRNOS = {errno.ENOSPC, getattr(errno, 'EDQUOT', errno.ENOSPC)}

    def __init__(self, config: LocalConfig, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)

    def path_for(self, tier: Tier, key: str) -> str:
        """Filesystem path for a key, refusing keys that escape the tier root."""
        tier_root = os.path.realpath(os.path.join(self.config.root_path, self.config.prefix, tier.value))
        path = os.path.realpath(os.path.join(tier_root, key))
        if not path.startswith(tier_root + os.sep):
            raise NotFoundError(f"Invalid key: {key}")
        return path

    def _translate(self, error: OSError, action: str, key: str) -> Exception:
        if isinstance(error, FileNotFoundError):
            return NotFoundError(f"Object not found: {key}")
        if error.errno in self.QUOTA_ERRNOS:
            self.logger.error(f"Storage full during {action} of {key}: {error}")
            return StorageQuotaError(f"Storage quota exceeded: {error.strerror}")
        return TransientProcessingError(f"Local {action} failed for {key}: {error}")

    def put_object(
        self,
        tier: Tier,
        key: str,
        data: bytes,
        content_type: str = 'application/octet-stream'
    ) -> None:
        """Write an object, replacing any existing file atomically."""
        path = self.path_for(tier, key)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=os.path.dirname(path), prefix='.upload_')
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.remove(tmp_path)
                raise
        except OSError as e:
            raise self._translate(e, 'put', key) from e

    def get_object(self, tier: Tier, key: str) -> bytes:
        """Read an object."""
        try:
            with open(self.path_for(tier, key), 'rb') as f:
                return f.read()
        except OSError as e:
            raise self._translate(e, 'get', key) from e

    def object_exists(self, tier: Tier, key: str) -> bool:
        return os.path.isfile(self.path_for(tier, key))

    def delete_object(self, tier: Tier, key: str) -> None:
        """
        Delete an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        try:
            os.remove(self.path_for(tier, key))
        except OSError as e:
            raise self._translate(e, 'delete', key) from e

    def list_keys(self, tier: Tier, prefix: str = '') -> Iterator[str]:
        """Yield keys in a tier that start with ``prefix``."""
        tier_root = os.path.join(self.config.root_path, self.config.prefix, tier.value)
        for dirpath, _, filenames in os.walk(tier_root):
            for name in sorted(filenames):
                if name.startswith('.upload_'):
                    continue
                key = os.path.relpath(os.path.join(dirpath, name), tier_root).replace(os.sep, '/')
                if key.startswith(prefix):
                    yield key

    # --- Signed URLs -------------------------------------------------------

    def generate_token(self, tier: Tier, key: str, expires: int) -> str:
        """Generate the token for a blob and expiry timestamp."""
        message = f"{tier.value}/{key}:{expires}".encode()
        mac = hmac.new(self.config.signing_key.encode(), message, digestmod='sha256')
        return ':'.join((mac.hexdigest(), str(expires)))

    def validate_token(self, token_in: str, tier: Tier, key: str, now: Optional[int] = None) -> None:
        """
        Validate a download token.

        Raises:
            TokenException: If the token is missing, malformed, expired or forged
        """
        if not token_in:
            raise TokenException("Download token is missing.")
        if ':' not in token_in:
            raise TokenException("Download token is malformed.")

        _, timestr = token_in.rsplit(':', 1)
        try:
            expires = int(timestr)
        except ValueError:
            raise TokenException("Download token is malformed.")

        current_time = int(time.time()) if now is None else now
        if current_time > expires:
            raise TokenException(f"Download token expired at {expires}")

        if not hmac.compare_digest(token_in, self.generate_token(tier, key, expires)):
            raise TokenException("Download token is invalid.")

    def generate_url(self, tier: Tier, key: str, ttl: int) -> str:
        """Generate a signed download URL served by server.py."""
        expires = int(time.time()) + ttl
        token = self.generate_token(tier, key, expires)
        base = self.config.base_url.rstrip('/')
        return f"{base}/blobs/{tier.value}/{quote(key)}?token={quote(token)}"
