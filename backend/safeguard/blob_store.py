import os
import re
import uuid
from pathlib import Path


DATA_DIR = os.getenv("DATA_DIR", "./data")
MAX_ATTACHMENT_BYTES = int(os.getenv("MAX_ATTACHMENT_BYTES", str(25 * 1024 * 1024)))


def safe_blob_name(filename: str | None) -> str:
    base = os.path.basename(str(filename or "").replace("\\", "/")).strip()
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", base).strip("._")
    return cleaned or "attachment"


def attachment_blob_key(submission_id: uuid.UUID, attachment_id: uuid.UUID, filename: str | None) -> str:
    return f"submissions/{submission_id}/attachments/{attachment_id}/{safe_blob_name(filename)}"


def blob_abs_path(blob_key: str) -> Path:
    key = str(blob_key or "").lstrip("/")
    root = Path(DATA_DIR).resolve()
    path = (root / key).resolve()
    if root not in path.parents:
        raise ValueError("blob_key_outside_data_dir")
    return path


def write_blob(blob_key: str, data: bytes) -> Path:
    if len(data) > MAX_ATTACHMENT_BYTES:
        raise ValueError("attachment_too_large")
    path = blob_abs_path(blob_key)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_bytes(data)
    os.replace(tmp_path, path)
    return path


def delete_blob(blob_key: str):
    blob_abs_path(blob_key).unlink(missing_ok=True)
