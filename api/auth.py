"""Simple header-based authentication for the local API."""
from __future__ import annotations

import secrets
from typing import Optional

from fastapi import Header, HTTPException, status


class APIKeyAuth:
    """Dependency enforcing a static API key provided via ``X-API-Key`` header."""

    def __init__(self, expected_key: Optional[str]) -> None:
        self._expected = (expected_key or "").strip()

    @property
    def configured(self) -> bool:
        return bool(self._expected)

    def __call__(self, x_api_key: Optional[str] = Header(None)) -> str:
        if not self._expected:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="API key is not configured.",
            )
        supplied = (x_api_key or "").strip()
        if not supplied or not secrets.compare_digest(supplied.encode("utf-8"), self._expected.encode("utf-8")):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or missing API key.",
            )
        return self._expected


__all__ = ["APIKeyAuth"]
