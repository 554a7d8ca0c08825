"""
ACC access tokens at rest.

Tokens are stored on ExternalProjectLink.encrypted_token as Fernet
ciphertext keyed by the ENCRYPTION_KEY environment variable:

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

The plaintext only ever lives on ``link._plaintext_token`` inside an
``unsealed_token(link)`` block, which is where the ACC gateway reads it.
"""

import logging
import os
from contextlib import contextmanager

from cryptography.fernet import Fernet, InvalidToken

from review_hub.core.exceptions import ExternalCallError

logger = logging.getLogger(__name__)


def _fernet() -> Fernet:
    key = os.getenv("ENCRYPTION_KEY")
    if not key:
        raise RuntimeError("ENCRYPTION_KEY is not set; ACC tokens cannot be stored or read")
    return Fernet(key.encode())


def encrypt_secret(plaintext: str) -> str:
    """Return URL-safe ciphertext for a TEXT column.

    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
    """
    return _fernet().encrypt(plaintext.encode("utf-8")).decode("utf-8")


def decrypt_secret(ciphertext: str) -> str:
    """
    Raises:
        RuntimeError: If ENCRYPTION_KEY is not set.
        cryptography.fernet.InvalidToken: Tampered value or a different key.
    """
    return _fernet().decrypt(ciphertext.encode("utf-8")).decode("utf-8")


@contextmanager
def unsealed_token(link):
    """Expose the decrypted ACC token on *link* for the duration of the block.

    Raises:
        ExternalCallError: The link has no token, or it was encrypted with
            another key (e.g. after ENCRYPTION_KEY rotation).
    """
    if not link.encrypted_token:
        raise ExternalCallError(f"ACC link {link.id} has no access token")
    try:
        link._plaintext_token = decrypt_secret(link.encrypted_token)
    except InvalidToken as exc:
        logger.error("Stored token for ACC link %s cannot be decrypted", link.id, extra={"link_id": link.id})
        raise ExternalCallError(f"ACC link {link.id} token cannot be decrypted; re-enter it") from exc
    try:
        yield link
    finally:
        link._plaintext_token = None
