"""Content addresses (CIDv1, raw codec, sha2-256, base32)."""
import asyncio
import base64
import hashlib
from pathlib import Path

CID_VERSION = 0x01
RAW_CODEC = 0x55
SHA2_256 = 0x12
SHA2_256_LENGTH = 0x20


def cid_from_digest(digest: bytes) -> str:
    """Build the base32 (multibase prefix ``b``) string form of a CIDv1."""
    raw = bytes([CID_VERSION, RAW_CODEC, SHA2_256, SHA2_256_LENGTH]) + digest
    return "b" + base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def compute_cid(data: bytes) -> str:
    return cid_from_digest(hashlib.sha256(data).digest())


async def compute_file_cid(path: Path) -> str:
    """Hash a file in a worker thread so the event loop stays free."""
    def _hash_file():
        hasher = hashlib.sha256()
        with open(path, "rb") as f:
            while True:
                chunk = f.read(1024 * 1024)
                if not chunk:
                    break
                hasher.update(chunk)
        return cid_from_digest(hasher.digest())

    return await asyncio.to_thread(_hash_file)
