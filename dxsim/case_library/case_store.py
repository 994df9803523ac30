"""
Case Store - Supabase access for cases, datasets and reference handles

Thin query layer: returns raw records and raises CaseStoreError on any
backend failure. Validation and degradation decisions belong to callers
(CaseCatalog, ReferenceResolver).
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from supabase import Client, create_client

from dxsim.config import SUPABASE_URL, SUPABASE_PUBLISHABLE_KEY
from dxsim.core.error_handler import CaseStoreError

logger = logging.getLogger(__name__)

CASES_TABLE = "cases"
DATASETS_TABLE = "datasets"
REFERENCE_COLUMNS = "gemini_file_uri, gemini_file_uploaded_at"

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Create the shared Supabase client on first use."""
    global _supabase_client
    if _supabase_client is None:
        if not SUPABASE_URL or not SUPABASE_PUBLISHABLE_KEY:
            raise CaseStoreError("Missing required Supabase environment variables "
                                 "(SUPABASE_PROJECT_ID, SUPABASE_PUBLISHABLE_KEY)")
        _supabase_client = create_client(SUPABASE_URL, SUPABASE_PUBLISHABLE_KEY)
        logger.info(f"Supabase client created for {SUPABASE_URL}")
    return _supabase_client


class SupabaseCaseStore:
    """
    Read-only access to the case library tables.

    The client is created lazily so the service can boot (and answer /health)
    before credentials are configured.
    """

    def __init__(self, client_factory: Callable[[], Client] = get_supabase_client):
        self._client_factory = client_factory

    def _table(self, name: str):
        return self._client_factory().table(name)

    def _execute(self, operation: str, build_query: Callable[[], Any]):
        try:
            return build_query().execute()
        except CaseStoreError:
            raise
        except Exception as e:
            raise CaseStoreError(f"{operation} failed: {e}") from e

    def fetch_cases(self, dataset: Optional[str] = None) -> List[Dict[str, Any]]:
        """All cases, newest first, optionally restricted to one dataset."""
        def build():
            query = self._table(CASES_TABLE).select("*").order("date_added", desc=True)
            if dataset:
                query = query.eq("dataset", dataset)
            return query

        response = self._execute("fetch_cases", build)
        return list(response.data or [])

    def count_cases(self) -> int:
        response = self._execute(
            "count_cases",
            lambda: self._table(CASES_TABLE).select("id", count="exact").limit(1)
        )
        return response.count or 0

    def fetch_case_at(self, offset: int) -> Optional[Dict[str, Any]]:
        """The single case at a given row offset, None if the offset is past the end."""
        response = self._execute(
            "fetch_case_at",
            lambda: self._table(CASES_TABLE).select("*").range(offset, offset)
        )
        rows = response.data or []
        return rows[0] if rows else None

    def fetch_datasets(self) -> List[Dict[str, Any]]:
        response = self._execute(
            "fetch_datasets",
            lambda: self._table(DATASETS_TABLE).select("*").order("created_at", desc=True)
        )
        return list(response.data or [])

    def fetch_reference_record(self, case_id: str) -> Optional[Dict[str, Any]]:
        """
        The stored reference-document columns for a case.
        Returns None when the case row doesn't exist.
        """
        response = self._execute(
            "fetch_reference_record",
            lambda: self._table(CASES_TABLE).select(REFERENCE_COLUMNS).eq("id", case_id).limit(1)
        )
        rows = response.data or []
        return rows[0] if rows else None
