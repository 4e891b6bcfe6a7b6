import csv
import io
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from .errors import SubmissionError

READ_CHUNK = 1024 * 1024

TRUTHY = {"true", "1", "yes", "y", "on", "t"}
FALSY = {"false", "0", "no", "n", "off", "f", ""}


def new_id() -> str:
    """Opaque identifier for entries, images and jobs."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def loose_bool(value: Any, default: bool = False) -> bool:
    """Normalize "true"/"1"/"yes"-style flags into a strict bool.

    Raises ValueError for values that are neither truthy nor falsy spellings.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value)
        raise ValueError(f"not a boolean: {value!r}")
    text = str(value).strip().lower()
    if text in TRUTHY:
        return True
    if text in FALSY:
        return default if text == "" else False
    raise ValueError(f"not a boolean: {value!r}")


def split_list(value: Any) -> List[str]:
    """Accept a list or a comma-joined string; drop blanks, keep order."""
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = value
    else:
        raise ValueError(f"expected a list or comma separated string, got {type(value).__name__}")
    out = []
    for item in items:
        if item is None:
            continue
        text = str(item).strip()
        if text:
            out.append(text)
    return out


def read_upload(fileobj, limit: int) -> bytes:
    """Read an uploaded file in 1 MiB pieces, refusing anything over ``limit`` bytes."""
    buf = io.BytesIO()
    size = 0
    while True:
        chunk = fileobj.read(READ_CHUNK)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise SubmissionError(f"File size exceeds {limit} byte limit")
        buf.write(chunk)
    return buf.getvalue()


def parse_csv_rows(data: bytes, max_rows: Optional[int] = None) -> List[dict]:
    """Parse a header-row CSV into dicts with trimmed keys and values."""
    if not data:
        raise SubmissionError("File is empty")
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise SubmissionError("CSV must be UTF-8 encoded") from e

    reader = csv.DictReader(io.StringIO(text))
    rows = []
    for record in reader:
        row = {}
        for key, value in record.items():
            if key is None:
                # extra cells past the header
                continue
            row[key.strip()] = value.strip() if isinstance(value, str) else value
        if not any(v for v in row.values()):
            continue
        rows.append(row)
        if max_rows is not None and len(rows) > max_rows:
            raise SubmissionError(f"CSV file contains too many rows (max {max_rows})")
    if not rows:
        raise SubmissionError("CSV file contains no data rows")
    return rows
