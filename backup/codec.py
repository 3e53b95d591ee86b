"""Canonical serialization, compression and checksums for dataset snapshots.

The canonical byte stream is the UTF-8 encoding of::

    {"data": {<kind>: [<row>, ...], ...}, "format": "1.0.0"}

with sorted keys and compact separators. Entity kinds follow
``catalog.ENTITY_KINDS`` and rows within a kind are ordered by ``id``, so the
checksum depends only on the logical content of the dataset.
"""
from __future__ import annotations

import hashlib
import json
import sys
import zlib
from typing import Any, Dict, Optional

from catalog.entities import ENTITY_KINDS, Dataset

from .errors import IntegrityError
from .types import EncodedPayload

DATASET_FORMAT = "1.0.0"
DEFAULT_COMPRESSION_LEVEL = 9


def _row_sort_key(row: Dict[str, Any]) -> Any:
    # Integer ids sort numerically; anything else sorts after them by text.
    value = row.get("id")
    numeric = isinstance(value, int)
    return (value is None, not numeric, value if numeric else str(value))


def canonical_bytes(dataset: Dataset) -> bytes:
    data = {}
    for kind in ENTITY_KINDS:
        rows = [record.to_dict() for record in dataset.records(kind)]
        rows.sort(key=_row_sort_key)
        data[kind] = rows
    document = {"format": DATASET_FORMAT, "data": data}
    text = json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    return text.encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class Codec:
    """Pure transformation between :class:`Dataset` and compressed payloads."""

    def __init__(self, *, compression_level: int = DEFAULT_COMPRESSION_LEVEL) -> None:
        level = int(compression_level)
        if not 0 <= level <= 9:
            raise ValueError("compression_level must be between 0 and 9")
        self._level = level

    # ------------------------------------------------------------------
    def encode(self, dataset: Dataset) -> EncodedPayload:
        raw = canonical_bytes(dataset)
        checksum = sha256_hex(raw)
        # zlib framing: header check bits and adler32 cover every byte.
        payload = zlib.compress(raw, self._level)
        return EncodedPayload(
            payload=payload,
            original_size=len(raw),
            compressed_size=len(payload),
            checksum=checksum,
        )

    def verify_payload(
        self,
        payload: bytes,
        expected_checksum: str,
        *,
        operation: str = "decode",
        max_output: Optional[int] = None,
    ) -> bytes:
        """Decompress *payload* and return the raw bytes if the checksum matches.

        With ``max_output`` set, inflation stops one byte past the bound and the
        payload is rejected instead of being expanded in full.
        """

        decompressor = zlib.decompressobj()
        try:
            if max_output is None:
                raw = decompressor.decompress(bytes(payload)) + decompressor.flush()
            else:
                limit = min(max(int(max_output), 0), sys.maxsize - 1)
                raw = decompressor.decompress(bytes(payload), limit + 1)
                if len(raw) > limit or decompressor.unconsumed_tail:
                    raise IntegrityError("payload larger than declared", operation=operation)
        except zlib.error as exc:
            raise IntegrityError(f"payload is not a valid compressed stream: {exc}", operation=operation) from exc
        if not decompressor.eof:
            raise IntegrityError("payload is truncated", operation=operation)
        if decompressor.unused_data:
            raise IntegrityError("payload has trailing bytes", operation=operation)
        actual = sha256_hex(raw)
        if actual != str(expected_checksum or "").lower():
            raise IntegrityError(
                f"checksum mismatch (expected {expected_checksum}, got {actual})",
                operation=operation,
            )
        return raw

    def parse(self, raw: bytes, *, operation: str = "decode") -> Dataset:
        try:
            document = json.loads(raw.decode("utf-8"))
            if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
                raise ValueError("missing data section")
            if document.get("format") != DATASET_FORMAT:
                raise ValueError(f"unsupported dataset format {document.get('format')!r}")
            return Dataset.from_dict(document["data"])
        except (UnicodeDecodeError, ValueError, TypeError, AttributeError, KeyError) as exc:
            raise IntegrityError(f"payload does not describe a dataset: {exc}", operation=operation) from exc

    def decode(self, payload: bytes, expected_checksum: str, *, operation: str = "decode") -> Dataset:
        raw = self.verify_payload(payload, expected_checksum, operation=operation)
        return self.parse(raw, operation=operation)


__all__ = ["Codec", "DATASET_FORMAT", "canonical_bytes", "sha256_hex"]
