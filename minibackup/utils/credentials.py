"""
Shared credentials file management.

Each storage target gets its own ``[profile]`` section holding
``aws_access_key_id`` / ``aws_secret_access_key``. Sections are only ever
appended: an existing section is left untouched.
"""

import os
import logging
import threading
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)

_write_lock = threading.Lock()


def default_credentials_file() -> str:
    """Path of the shared credentials file (AWS_SHARED_CREDENTIALS_FILE or ~/.aws/credentials)."""
    return os.environ.get('AWS_SHARED_CREDENTIALS_FILE') or str(Path.home() / '.aws' / 'credentials')


def has_profile(content: str, profile_name: str) -> bool:
    """Check whether ``content`` already declares the ``[profile_name]`` section."""
    header = f"[{profile_name}]"
    return any(line.strip() == header for line in content.splitlines())


def write_credentials_profile(
    profile_name: str,
    access_key: str,
    secret_key: str,
    credentials_file: Optional[str] = None
) -> bool:
    """
    Add a profile section to the shared credentials file if it is absent.

    Args:
        profile_name: Section name
        access_key: Access key ID
        secret_key: Secret access key
        credentials_file: File to update (default: ``default_credentials_file()``)

    Returns:
        True if the section was written, False if it already existed

    Raises:
        OSError: If the file cannot be read or written
    """
    path = Path(credentials_file or default_credentials_file())

    with _write_lock:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        existing_content = path.read_text() if path.exists() else ''
        if has_profile(existing_content, profile_name):
            logger.debug(f"Profile [{profile_name}] already present in {path}, nothing to do")
            return False

        section = (
            f"[{profile_name}]\n"
            f"aws_access_key_id = {access_key}\n"
            f"aws_secret_access_key = {secret_key}\n"
        )
        path.write_text(existing_content + "\n" + section)
        os.chmod(path, 0o600)

    logger.info(f"Profile [{profile_name}] added to credentials file {path}")
    return True
