import hashlib
from pathlib import Path


def calculate_source_hash(content_identity: str) -> str:
    """Stable hex digest for a source file identity (stored file hash, or id + size + mtime)."""
    hasher = hashlib.sha256()
    hasher.update(content_identity.encode("utf-8"))
    return hasher.hexdigest()


def file_identity(media_id: int, path: Path) -> str:
    """Identity that changes whenever the file on disk is replaced or rewritten."""
    st = path.stat()
    return f"{media_id}|{st.st_size}|{st.st_mtime_ns}"


def hash_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """SHA-256 of the file contents, used for duplicate detection on registration."""
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
    return hasher.hexdigest()
