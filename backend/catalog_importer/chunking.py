"""Split validated rows into queue-sized chunks."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import List, Optional, Sequence

from .schemas import ChunkMessage, ProductRow

# bytes of JSON around the rows array in a message
ENVELOPE_OVERHEAD = 256


@dataclass
class Chunk:
    job_id: str
    store_id: str
    index: int
    rows: List[ProductRow]

    def to_message(self) -> dict:
        return ChunkMessage(
            job_id=self.job_id,
            store_id=self.store_id,
            chunk_index=self.index,
            rows=self.rows,
        ).model_dump(mode="json")


def _row_size(row: ProductRow) -> int:
    return len(json.dumps(row.model_dump(mode="json"), separators=(",", ":")))


def plan_chunks(
    job_id: str,
    store_id: str,
    rows: Sequence[ProductRow],
    max_rows: int,
    max_bytes: Optional[int] = None,
) -> List[Chunk]:
    """
    Group rows into chunks of at most ``max_rows`` rows.

    When ``max_bytes`` is given a chunk is also closed before its serialized
    rows would pass that size. A single row larger than ``max_bytes`` still
    travels alone in its own chunk; rows are never split.
    """
    if max_rows < 1:
        raise ValueError("max_rows must be at least 1")

    chunks: List[Chunk] = []
    current: List[ProductRow] = []
    current_bytes = ENVELOPE_OVERHEAD

    def close():
        nonlocal current, current_bytes
        if current:
            chunks.append(Chunk(job_id, store_id, len(chunks), current))
        current = []
        current_bytes = ENVELOPE_OVERHEAD

    for row in rows:
        size = _row_size(row) + 1 if max_bytes else 0
        if current and (
            len(current) >= max_rows or (max_bytes and current_bytes + size > max_bytes)
        ):
            close()
        current.append(row)
        current_bytes += size
    close()
    return chunks
