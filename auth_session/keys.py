"""
Symmetric key for encrypting tokens at rest (Fernet).
Load from file or generate and persist with owner-only permissions; no key material in code.
"""
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet

logger = logging.getLogger(__name__)


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


def load_or_create_encryption_key(path: str | None) -> Fernet:
    """
    Load the Fernet key from path, or generate and save one.
    If the file cannot be written the key only lives for this process (stored tokens will not
    survive a restart).
    """
    p = Path(path or ".auth_session_key")
    if p.exists():
        try:
            return Fernet(p.read_bytes().strip())
        except ValueError as e:
            logger.warning("Invalid encryption key in %s: %s; generating new key", p, e)
    key = Fernet.generate_key()
    try:
        _write_private(p, key)
        logger.info("Generated and saved credential encryption key to %s", p)
    except OSError as e:
        logger.warning("Could not save encryption key to %s: %s", p, e)
    return Fernet(key)
