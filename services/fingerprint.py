# services/fingerprint.py
"""
Content fingerprinting for exact-duplicate detection.

SHA-256 over the raw upload bytes. This catches byte-identical resubmission only:
a re-encoded, resized or cropped copy of the same photo produces a different digest.
"""
import hashlib

CHUNK_SIZE = 64 * 1024


def fingerprint(data: bytes) -> str:
     """Return the 64-char hex SHA-256 digest of data."""
     digest = hashlib.sha256()
     view = memoryview(data)
     # Hash in chunks to keep large uploads from being copied
     for start in range(0, len(view), CHUNK_SIZE):
          digest.update(view[start:start + CHUNK_SIZE])
     return digest.hexdigest()
