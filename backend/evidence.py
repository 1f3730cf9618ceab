"""
Local evidence store.

Screenshots are written once under EVIDENCE_DIR, named by their sha256, and
only the returned reference string is ever stored on a match or request.
"""
import hashlib
import logging
import os
import re

from platform_config import EVIDENCE_DIR

logger = logging.getLogger(__name__)

ALLOWED_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}
MAX_EVIDENCE_BYTES = 5 * 1024 * 1024
REFERENCE_PATTERN = re.compile(r"^evidence/[0-9a-f]{64}\.[a-z]+$")


class EvidenceRejected(ValueError):
    """Upload is empty, too large or of an unsupported type."""


class LocalEvidenceStore:
    """Content-addressed file store for screenshots."""

    def __init__(self, base_dir: str = EVIDENCE_DIR):
        self.base_dir = base_dir
        os.makedirs(self.base_dir, exist_ok=True)

    def put(self, data: bytes, suffix: str = ".png") -> str:
        """Store bytes and return a stable reference like 'evidence/<sha256>.png'."""
        suffix = suffix.lower() if suffix.startswith(".") else f".{suffix.lower()}"
        if suffix not in ALLOWED_SUFFIXES:
            raise EvidenceRejected(f"Unsupported evidence type {suffix}")
        if not data:
            raise EvidenceRejected("Evidence is empty")
        if len(data) > MAX_EVIDENCE_BYTES:
            raise EvidenceRejected("Evidence exceeds 5 MB")

        digest = hashlib.sha256(data).hexdigest()
        filename = f"{digest}{suffix}"
        path = os.path.join(self.base_dir, filename)

        # Same bytes, same name: a re-upload is a no-op
        if not os.path.exists(path):
            with open(path, "wb") as f:
                f.write(data)
            logger.info(f"[EVIDENCE] Stored {filename} ({len(data)} bytes)")

        return f"evidence/{filename}"

    def exists(self, reference: str) -> bool:
        if not reference or not REFERENCE_PATTERN.match(reference):
            return False
        return os.path.exists(os.path.join(self.base_dir, reference.split("/", 1)[1]))
