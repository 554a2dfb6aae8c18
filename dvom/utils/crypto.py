"""
Streaming encryption for backup archives.

Uses AES-256-GCM with a key derived from the user's password (PBKDF2-SHA256).
The plaintext is sealed in independent 64KB chunks; chunk i uses the base
nonce from the header with the 64-bit counter i XORed into its last 8 bytes,
so encryption and decryption derive the same nonce sequence without storing
one nonce per chunk.

Stored format:
    magic "DVOM-ENC" (8) | version (1) | salt (32) | base nonce (12) | chunks

Each chunk on disk is the ciphertext followed by its 16-byte GCM tag.
"""

import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .streams import BufferedRawReader, read_full


MAGIC = b'DVOM-ENC'
FORMAT_VERSION = 1

SALT_SIZE = 32
KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12
TAG_SIZE = 16
ITERATIONS = 100000

CHUNK_SIZE = 64 * 1024
HEADER_SIZE = len(MAGIC) + 1 + SALT_SIZE + NONCE_SIZE

_MAX_COUNTER = 2 ** 64 - 1


class EncryptionError(Exception):
    """Raised when a backup cannot be encrypted or decrypted."""
    pass


class AuthenticationError(EncryptionError):
    """Raised when a chunk fails authentication (wrong password or tampered data)."""
    pass


class CorruptedBackupError(EncryptionError):
    """Raised when an encrypted backup has a missing or malformed header."""
    pass


@dataclass
class EncryptionHeader:
    """Salt and base nonce for one encrypted stream."""
    salt: bytes
    nonce: bytes
    version: int = FORMAT_VERSION

    @classmethod
    def generate(cls) -> 'EncryptionHeader':
        """Create a header with a fresh random salt and base nonce."""
        return cls(salt=os.urandom(SALT_SIZE), nonce=os.urandom(NONCE_SIZE))

    def to_bytes(self) -> bytes:
        return MAGIC + bytes([self.version]) + self.salt + self.nonce


def derive_key(password: str, salt: bytes) -> bytes:
    """
    Derive a 32-byte AES key from a password using PBKDF2.

    Args:
        password: User supplied password
        salt: Salt from the encryption header

    Returns:
        Raw key bytes
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=ITERATIONS,
    )
    return kdf.derive(password.encode())


def chunk_nonce(base_nonce: bytes, counter: int) -> bytes:
    """
    Derive the nonce for a chunk.

    The counter is XORed big-endian into the low-order 8 bytes of the base
    nonce; the leading 4 bytes are left untouched.

    Args:
        base_nonce: 12-byte nonce from the header
        counter: Zero-based chunk index

    Returns:
        12-byte nonce unique to this chunk
    """
    if not 0 <= counter <= _MAX_COUNTER:
        raise EncryptionError(f"Chunk counter out of range: {counter}")

    prefix, low = base_nonce[:-8], base_nonce[-8:]
    mixed = struct.unpack('>Q', low)[0] ^ counter
    return prefix + struct.pack('>Q', mixed)


def encrypted_size(plain_size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Exact size of an encrypted backup, header included.

    Args:
        plain_size: Size of the plaintext in bytes
        chunk_size: Plaintext chunk size

    Returns:
        Number of bytes the header plus sealed chunks occupy
    """
    chunks = (plain_size + chunk_size - 1) // chunk_size
    return HEADER_SIZE + plain_size + chunks * TAG_SIZE


def read_header(stream: BinaryIO) -> EncryptionHeader:
    """
    Read and validate the encryption header.

    Args:
        stream: Stream positioned at the start of an encrypted backup

    Returns:
        Parsed EncryptionHeader

    Raises:
        CorruptedBackupError: If the header is missing, truncated or of an unknown version
    """
    data = read_full(stream, HEADER_SIZE)
    return parse_header(data)


def parse_header(data: bytes) -> EncryptionHeader:
    """Parse header bytes (see read_header)."""
    if not is_encrypted(data):
        raise CorruptedBackupError("Not an encrypted DVOM backup (encryption header missing)")

    if len(data) < HEADER_SIZE:
        raise CorruptedBackupError("Encryption header is truncated")

    version = data[len(MAGIC)]
    if version != FORMAT_VERSION:
        raise CorruptedBackupError(f"Unsupported encryption version: {version}")

    offset = len(MAGIC) + 1
    salt = data[offset:offset + SALT_SIZE]
    nonce = data[offset + SALT_SIZE:offset + SALT_SIZE + NONCE_SIZE]
    return EncryptionHeader(salt=salt, nonce=nonce, version=version)


def is_encrypted(data: bytes) -> bool:
    """Check whether data starts with the encryption magic."""
    return len(data) >= len(MAGIC) and data[:len(MAGIC)] == MAGIC


class EncryptingReader(BufferedRawReader):
    """
    Reads plaintext from a source stream and yields sealed chunks.

    The header is not part of the output; callers write it first.
    """

    def __init__(self, source: BinaryIO, password: str, header: EncryptionHeader,
                 chunk_size: int = CHUNK_SIZE):
        super().__init__()
        self.source = source
        self.header = header
        self.chunk_size = chunk_size
        self._aead = AESGCM(derive_key(password, header.salt))
        self._counter = 0

    def _next_block(self) -> bytes:
        plaintext = read_full(self.source, self.chunk_size)
        if not plaintext:
            return b''

        nonce = chunk_nonce(self.header.nonce, self._counter)
        self._counter += 1
        return self._aead.encrypt(nonce, plaintext, None)

    def close(self):
        self.source.close()
        super().close()


class DecryptingReader(BufferedRawReader):
    """
    Reads sealed chunks from a source stream and yields plaintext.

    Any chunk that fails authentication aborts the stream with
    AuthenticationError; nothing from that chunk is returned.
    """

    def __init__(self, source: BinaryIO, password: str, header: EncryptionHeader,
                 chunk_size: int = CHUNK_SIZE):
        super().__init__()
        self.source = source
        self.header = header
        self.chunk_size = chunk_size
        self._aead = AESGCM(derive_key(password, header.salt))
        self._counter = 0

    def _next_block(self) -> bytes:
        frame = read_full(self.source, self.chunk_size + TAG_SIZE)
        if not frame:
            return b''

        if len(frame) <= TAG_SIZE:
            raise AuthenticationError(
                f"Authentication failed: truncated chunk {self._counter} (wrong password or corrupted data)"
            )

        nonce = chunk_nonce(self.header.nonce, self._counter)
        try:
            plaintext = self._aead.decrypt(nonce, frame, None)
        except InvalidTag:
            raise AuthenticationError(
                f"Authentication failed on chunk {self._counter} (wrong password or corrupted data)"
            )

        self._counter += 1
        return plaintext

    def close(self):
        self.source.close()
        super().close()


def encrypt_stream(source: BinaryIO, password: str) -> Tuple[EncryptingReader, EncryptionHeader]:
    """
    Wrap a plaintext stream with encryption.

    Args:
        source: Readable plaintext stream
        password: Encryption password

    Returns:
        (reader producing sealed chunks, header to store in front of them)
    """
    if not password:
        raise EncryptionError("Encryption password is required")

    header = EncryptionHeader.generate()
    return EncryptingReader(source, password, header), header


def decrypt_stream(source: BinaryIO, password: str, header: EncryptionHeader) -> DecryptingReader:
    """
    Wrap an encrypted stream (positioned after the header) with decryption.

    Args:
        source: Readable stream of sealed chunks
        password: Decryption password
        header: Header read from the front of the backup

    Returns:
        Reader producing plaintext
    """
    if not password:
        raise EncryptionError("Decryption password is required")

    return DecryptingReader(source, password, header)
