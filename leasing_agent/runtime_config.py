"""
Process-wide runtime configuration set through the admin route.

Single-tenant by construction: one global store, last writer wins, and the two
fields are not updated transactionally. A multi-tenant deployment would need
per-tenant scoping here.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Optional


class RuntimeConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    docs_url: Optional[str] = None
    company_name: Optional[str] = None
    updated_at_ms: int = 0


@dataclass(frozen=True, slots=True)
class RuntimeConfigUpdate:
    docs_url: str
    company_name: str


_lock = threading.Lock()
_store: RuntimeConfig | None = None


def _get_store() -> RuntimeConfig:
    global _store
    if _store is None:
        _store = RuntimeConfig(updated_at_ms=int(time.time() * 1000))
    return _store


def _clean_docs_url(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    return trimmed.rstrip("/") or None


def _clean_company_name(raw: Any) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    return raw.strip() or None


def validate_update(body: Any) -> RuntimeConfigUpdate:
    if not isinstance(body, dict):
        raise RuntimeConfigError("Request body must be an object.")
    docs_url = body.get("docsUrl").strip() if isinstance(body.get("docsUrl"), str) else ""
    company_name = body.get("companyName").strip() if isinstance(body.get("companyName"), str) else ""
    if not docs_url:
        raise RuntimeConfigError("docsUrl is required.")
    if not company_name:
        raise RuntimeConfigError("companyName is required.")
    return RuntimeConfigUpdate(docs_url=docs_url, company_name=company_name)


def set_runtime_config(*, docs_url: Any = None, company_name: Any = None) -> RuntimeConfig:
    """Blank values leave the stored field untouched."""
    global _store
    cleaned_url = _clean_docs_url(docs_url)
    cleaned_name = _clean_company_name(company_name)
    with _lock:
        current = _get_store()
        updated = replace(
            current,
            docs_url=cleaned_url if cleaned_url is not None else current.docs_url,
            company_name=cleaned_name if cleaned_name is not None else current.company_name,
            updated_at_ms=int(time.time() * 1000),
        )
        _store = updated
    return updated


def get_runtime_config() -> RuntimeConfig:
    with _lock:
        return _get_store()


def reset_runtime_config() -> None:
    global _store
    with _lock:
        _store = None
