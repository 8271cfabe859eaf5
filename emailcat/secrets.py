"""Secret handling: SOPS-encrypted env files and the credential cipher.

Credentials stored in the database pass through a ``Cipher``. The cipher is
an opaque collaborator; the store never inspects ciphertext.
"""

import subprocess
from io import StringIO
from pathlib import Path
from typing import Protocol

from dotenv import dotenv_values


class Cipher(Protocol):
    """Opaque encrypt/decrypt pair used for credentials at rest."""

    def encrypt(self, plaintext: str) -> str: ...

    def decrypt(self, ciphertext: str) -> str: ...


class PlaintextCipher:
    """Pass-through cipher for local development (no encryption at rest).

    Mirrors the plain .env fallback: use only where the database file itself
    is protected (chmod 600).
    """

    def encrypt(self, plaintext: str) -> str:
        return plaintext

    def decrypt(self, ciphertext: str) -> str:
        return ciphertext


def load_secrets(encrypted_path: str | Path) -> dict[str, str | None]:
    """Decrypt a SOPS-encrypted .env file and return its key-value pairs.

    Raises:
        FileNotFoundError: If the encrypted file does not exist.
        subprocess.CalledProcessError: If SOPS decryption fails.
    """
    path = Path(encrypted_path)
    if not path.exists():
        raise FileNotFoundError(f"Encrypted secrets file not found: {path}")

    result = subprocess.run(
        ["sops", "--decrypt", str(path)],
        capture_output=True,
        text=True,
        check=True,
    )
    return dict(dotenv_values(stream=StringIO(result.stdout)))


def load_dotenv_fallback(dotenv_path: str | Path) -> dict[str, str | None]:
    """Load a plain .env file. A missing file yields an empty mapping."""
    path = Path(dotenv_path)
    if not path.exists():
        return {}
    return dict(dotenv_values(path))
