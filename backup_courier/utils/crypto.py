"""
Archive encryption with a passphrase.

Files are sealed with AES-256-GCM in fixed-size chunks, using a key derived
from the passphrase with PBKDF2-HMAC-SHA256. Layout:

    header  = magic(8) | iterations(u32) | chunk_size(u32) | salt(16) | nonce_prefix(7)
    body    = sealed chunk, sealed chunk, ...

Each chunk nonce is nonce_prefix | counter(u32) | final(1) and every chunk
authenticates the header, so truncating, reordering, appending or editing
any byte makes decryption fail.
"""

import os
import struct
import time
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..errors import EncryptionError


MAGIC = b'BKCENC01'
HEADER = struct.Struct('>8sII16s7s')
TAG_SIZE = 16
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 7

ENCRYPTED_SUFFIX = '.enc'
DEFAULT_ITERATIONS = 480000  # OWASP recommended iterations for 2023+
DEFAULT_CHUNK_SIZE = 1024 * 1024
MAX_CHUNK_SIZE = 64 * 1024 * 1024
MAX_ITERATIONS = 10000000
MAX_CHUNKS = 2 ** 32


def derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    """
    Derive a 32-byte AES key from a passphrase.

    Args:
        passphrase: User passphrase
        salt: Random salt stored in the file header
        iterations: PBKDF2 iteration count stored in the file header

    Returns:
        Raw 256-bit key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode())


def _nonce(prefix: bytes, counter: int, final: bool) -> bytes:
    if counter >= MAX_CHUNKS:
        raise EncryptionError("File too large for a single encrypted stream")
    return prefix + struct.pack('>I', counter) + (b'\x01' if final else b'\x00')


def encrypted_name(archive_name: str) -> str:
    return f"{archive_name}{ENCRYPTED_SUFFIX}"


def decrypted_name(encrypted: str) -> str:
    if encrypted.endswith(ENCRYPTED_SUFFIX):
        return encrypted[:-len(ENCRYPTED_SUFFIX)]
    return f"{encrypted}.decrypted"


class Encryptor:
    """Encrypts archives with a passphrase."""

    def __init__(
        self,
        passphrase: Optional[str],
        iterations: int = DEFAULT_ITERATIONS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        timeout: Optional[float] = None
    ):
        """
        Initialize the encryptor.

        Args:
            passphrase: Encryption passphrase (must be non-empty)
            iterations: PBKDF2 iterations
            chunk_size: Plaintext bytes per sealed chunk
            timeout: Seconds before encryption is abandoned (None = no limit)

        Raises:
            EncryptionError: If the passphrase is missing or parameters are invalid
        """
        if not passphrase:
            raise EncryptionError("Encryption passphrase is missing or empty")
        if not 0 < chunk_size <= MAX_CHUNK_SIZE:
            raise EncryptionError(f"Invalid chunk size: {chunk_size}")
        if not 0 < iterations <= MAX_ITERATIONS:
            raise EncryptionError(f"Invalid KDF iteration count: {iterations}")

        self._passphrase = passphrase
        self.iterations = iterations
        self.chunk_size = chunk_size
        self.timeout = timeout

    def encrypt_file(self, source: Path, destination: Optional[Path] = None) -> Path:
        """
        Encrypt a file.

        Args:
            source: Plaintext file
            destination: Output path (defaults to source + '.enc')

        Returns:
            Path to the encrypted file

        Raises:
            EncryptionError: If the source cannot be read, the output cannot be written,
                or the timeout expires
        """
        source = Path(source)
        destination = Path(destination) if destination else source.with_name(encrypted_name(source.name))
        deadline = time.monotonic() + self.timeout if self.timeout else None

        salt = os.urandom(SALT_SIZE)
        prefix = os.urandom(NONCE_PREFIX_SIZE)
        header = HEADER.pack(MAGIC, self.iterations, self.chunk_size, salt, prefix)
        aead = AESGCM(derive_key(self._passphrase, salt, self.iterations))

        created = False
        try:
            with open(source, 'rb') as fin, open(destination, 'wb') as fout:
                created = True
                fout.write(header)
                counter = 0
                chunk = fin.read(self.chunk_size)
                while True:
                    if deadline is not None and time.monotonic() > deadline:
                        raise EncryptionError(f"Encryption timed out after {self.timeout} seconds")
                    following = fin.read(self.chunk_size)
                    final = not following
                    fout.write(aead.encrypt(_nonce(prefix, counter, final), chunk, header))
                    if final:
                        break
                    chunk = following
                    counter += 1
        except EncryptionError:
            if created:
                _remove_quietly(destination)
            raise
        except OSError as e:
            if created:
                _remove_quietly(destination)
            raise EncryptionError(f"Failed to encrypt {source.name}: {e}")

        return destination


def decrypt_file(source: Path, destination: Path, passphrase: str) -> Path:
    """
    Decrypt a file produced by Encryptor.

    Args:
        source: Encrypted file
        destination: Where to write the plaintext
        passphrase: Passphrase used for encryption

    Returns:
        Path to the decrypted file

    Raises:
        EncryptionError: On wrong passphrase, corruption, truncation or I/O failure
    """
    if not passphrase:
        raise EncryptionError("Decryption passphrase is missing or empty")

    source = Path(source)
    destination = Path(destination)
    created = False

    try:
        with open(source, 'rb') as fin:
            header = fin.read(HEADER.size)
            if len(header) != HEADER.size:
                raise EncryptionError(f"Not an encrypted backup (header too short): {source.name}")
            magic, iterations, chunk_size, salt, prefix = HEADER.unpack(header)
            if magic != MAGIC:
                raise EncryptionError(f"Not an encrypted backup: {source.name}")
            if not 0 < chunk_size <= MAX_CHUNK_SIZE or not 0 < iterations <= MAX_ITERATIONS:
                raise EncryptionError(f"Corrupted header in {source.name}")

            aead = AESGCM(derive_key(passphrase, salt, iterations))
            sealed_size = chunk_size + TAG_SIZE

            with open(destination, 'wb') as fout:
                created = True
                counter = 0
                block = fin.read(sealed_size)
                if not block:
                    raise EncryptionError(f"Encrypted backup is truncated: {source.name}")
                while True:
                    following = fin.read(sealed_size)
                    final = not following
                    try:
                        fout.write(aead.decrypt(_nonce(prefix, counter, final), block, header))
                    except InvalidTag:
                        raise EncryptionError(
                            "Decryption failed: wrong passphrase or corrupted file"
                        )
                    if final:
                        break
                    block = following
                    counter += 1
    except EncryptionError:
        if created:
            _remove_quietly(destination)
        raise
    except OSError as e:
        if created:
            _remove_quietly(destination)
        raise EncryptionError(f"Failed to decrypt {source.name}: {e}")

    return destination


def _remove_quietly(path: Path):
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
