"""Persist computed outputs of an operation.

Tabular outputs are converted to CSV text and stored persistently (no TTL)
under ``csv:{uid}.{index}``, where index is the position the reference takes
in the operation's outputs list. Opaque JSON blobs (e.g. topic stats) are
stored under ``{kind}:{uid}`` and are not listed as outputs.

The download route reads both back through load().
"""

import csv
import io
import json
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Optional

from stardust.cache.kv_store import ScopedCache
from stardust.executor.schemas import OutputRef

logger = logging.getLogger(__name__)

CSV_KEY_PREFIX = "csv:"
TABLE_FORMAT = "csv-stats"


class ArtifactDataError(ValueError):
    """Payload cannot be stored as a table (empty, or not a list of records)."""


def table_key(uid: str, index: int) -> str:
    return f"{CSV_KEY_PREFIX}{uid}.{index}"


def blob_key(kind: str, uid: str) -> str:
    return f"{kind}:{uid}"


def parse_operation_uid(key: str, prefix: str = CSV_KEY_PREFIX) -> Optional[str]:
    """Return the operation uid encoded in an artifact key, or None."""
    if not key.startswith(prefix):
        return None
    uid = key[len(prefix):].split(".")[0]
    return uid or None


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


def records_to_csv(records: Any) -> tuple[str, list[str]]:
    """Convert a non-empty sequence of mappings to CSV text.

    The header is the union of all record keys in first-seen order.
    Nested values are JSON-encoded, missing values are left empty.

    Returns (csv_text, column_names).
    """
    if isinstance(records, (str, bytes)) or not isinstance(records, Sequence) or len(records) < 1:
        raise ArtifactDataError("expected a non-empty list of records")
    if not all(isinstance(row, Mapping) for row in records):
        raise ArtifactDataError("every record must be a mapping")

    columns: list[str] = []
    seen: set[str] = set()
    for row in records:
        for key in row:
            if key not in seen:
                seen.add(key)
                columns.append(str(key))

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    for row in records:
        writer.writerow({str(k): _cell(v) for k, v in row.items()})
    return buffer.getvalue(), columns


class ArtifactCache:
    """Stores operation outputs in the scoped cache."""

    def __init__(self, cache: ScopedCache):
        self.cache = cache

    async def store_table(self, key: str, records: Any) -> OutputRef:
        """Store records as CSV and return the reference to add to the operation."""
        csv_text, columns = records_to_csv(records)
        await self.cache.set_persistent_json(key, csv_text)

        ref = OutputRef(
            format=TABLE_FORMAT,
            row_count=len(records),
            col_count=len(columns),
            byte_size=len(csv_text.encode("utf-8")),
            cache_key=key,
        )
        logger.info(
            f"Stored table {key}: {ref.row_count} rows x {ref.col_count} cols, "
            f"{ref.byte_size:,} bytes"
        )
        return ref

    async def store_blob(self, key: str, payload: Any) -> None:
        await self.cache.set_persistent_json(key, payload)
        logger.info(f"Stored blob {key}")

    async def load(self, key: str) -> Any:
        """Read back a stored artifact (CSV text or JSON object), or None."""
        return await self.cache.get_json(key)
