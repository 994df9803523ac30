"""
Case library client - requests wrapper around the listing endpoints
"""
from typing import List, Optional

import requests

from dxsim.config import BASE_URL
from dxsim.core.datashapes import Case, Dataset, missing_case_field


class LibraryError(Exception):
    """The case library endpoints could not serve the request."""


class LibraryClient:
    def __init__(self, base_url: str = BASE_URL, http: requests.Session = None, timeout: float = 10):
        self.base_url = base_url.rstrip('/')
        self.http = http or requests.Session()
        self.timeout = timeout

    def _get(self, path: str, **params) -> dict:
        try:
            response = self.http.get(f"{self.base_url}{path}", params=params or None, timeout=self.timeout)
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise LibraryError(f"GET {path} failed: {e}") from e
        if response.status_code != 200:
            raise LibraryError(payload.get('error') or f"HTTP error! status: {response.status_code}")
        return payload

    def list_cases(self, dataset: Optional[str] = None) -> List[Case]:
        payload = self._get('/api/cases', **({'dataset': dataset} if dataset else {}))
        # Server already validated; re-check so a stale server can't hand us a half record
        return [Case.from_record(r) for r in payload.get('cases', []) if missing_case_field(r) is None]

    def get_case(self, case_id: str, dataset: Optional[str] = None) -> Optional[Case]:
        for case in self.list_cases(dataset):
            if case.id == case_id:
                return case
        return None

    def random_case(self) -> Case:
        payload = self._get('/api/random-case')
        record = payload.get('case')
        if not payload.get('success') or missing_case_field(record) is not None:
            raise LibraryError(payload.get('error') or 'Failed to load random case')
        return Case.from_record(record)

    def list_datasets(self) -> List[Dataset]:
        payload = self._get('/api/datasets')
        return [Dataset.from_record(r) for r in payload.get('datasets', []) if isinstance(r, dict)]
