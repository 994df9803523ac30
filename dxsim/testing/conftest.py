"""
DXSim Test Configuration and Fixtures

Shared fakes (in-memory case store, scripted engine, frozen clock) and the
fixtures that wire them into the real resolver, coordinator, driver and
Flask app.
"""

import os

# Keep the section loggers off the filesystem during tests
os.environ["DXSIM_LOG_DIR"] = ""

import random
import pytest
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from dxsim.core.datashapes import Case
from dxsim.core.error_handler import ErrorHandler, CaseStoreError, EngineInvocationError


# =============================================================================
# PYTEST MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "critical: must-pass tests for case isolation")
    config.addinivalue_line("markers", "concurrency: exercises several threads at once")
    config.addinivalue_line("markers", "slow: long-running tests")


# =============================================================================
# KEY CONSTANTS
# =============================================================================

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
FILE_PREFIX = "https://generativelanguage.googleapis.com/v1beta/files/"
SYSTEM_PROMPT = "You are the gatekeeper."


def make_case(case_id: str, number: str = "2300001", **overrides) -> Dict:
    record = {
        "id": case_id,
        "doi": f"10.1056/NEJMcpc{number}",
        "title": f"Case {number}: A Patient with Fever",
        "short_title": f"Fever {number}",
        "clinical_vignette": f"A 45-year-old presented with fever (case {case_id}).",
        "year": 2023,
        "dataset": "nejm",
        "date_added": "2026-01-01T00:00:00Z",
    }
    record.update(overrides)
    return record


# =============================================================================
# FAKES
# =============================================================================

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class InMemoryCaseStore:
    """Stands in for SupabaseCaseStore; same method surface, dict-backed."""

    def __init__(self, cases: Optional[List[Dict]] = None):
        self.cases = list(cases or [])
        self.datasets: List[Dict] = []
        self.references: Dict[str, Dict] = {}
        self.reference_calls: List[str] = []
        self.fail_listing = False
        self.fail_references = False

    def add_reference(self, case_id: str, uploaded_at: datetime, uri: Optional[str] = None):
        self.references[case_id] = {
            "gemini_file_uri": uri or f"{FILE_PREFIX}{case_id}",
            "gemini_file_uploaded_at": uploaded_at.isoformat(),
        }

    def fetch_cases(self, dataset=None):
        if self.fail_listing:
            raise CaseStoreError("fetch_cases failed: connection refused")
        return [c for c in self.cases if not dataset or c.get("dataset") == dataset]

    def count_cases(self):
        if self.fail_listing:
            raise CaseStoreError("count_cases failed: connection refused")
        return len(self.cases)

    def fetch_case_at(self, offset):
        return self.cases[offset] if 0 <= offset < len(self.cases) else None

    def fetch_datasets(self):
        if self.fail_listing:
            raise CaseStoreError("fetch_datasets failed: connection refused")
        return list(self.datasets)

    def fetch_reference_record(self, case_id):
        self.reference_calls.append(case_id)
        if self.fail_references:
            raise CaseStoreError("fetch_reference_record failed: timeout")
        if case_id not in self.references:
            return {"gemini_file_uri": None, "gemini_file_uploaded_at": None}
        return dict(self.references[case_id])


class ScriptedEngine:
    """Completion engine fake: records every call, answers from a script."""

    def __init__(self, answer: str = "I have had a fever for three days."):
        self.answer = answer
        self.error: Optional[Exception] = None
        self.calls = []

    def complete(self, system_instruction, turns):
        self.calls.append((system_instruction, list(turns)))
        if self.error is not None:
            raise self.error
        return self.answer

    @property
    def last_turns(self):
        return self.calls[-1][1]

    @property
    def last_attachment_uris(self):
        return [t.file_uri for t in self.last_turns if t.is_attachment]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def case_a():
    return make_case("case-a", "2300001")


@pytest.fixture
def case_b():
    return make_case("case-b", "2300002")


@pytest.fixture
def store(clock, case_a, case_b):
    """Two valid cases; only case A has a reference document (uploaded an hour ago)."""
    s = InMemoryCaseStore([case_a, case_b])
    s.add_reference("case-a", clock.now - timedelta(hours=1))
    return s


@pytest.fixture
def error_handler():
    return ErrorHandler(debug_mode=False)


@pytest.fixture
def resolver(store, clock, error_handler):
    from dxsim.core.reference_resolver import ReferenceResolver
    return ReferenceResolver(store, clock=clock, error_handler=error_handler)


@pytest.fixture
def registry(clock):
    from dxsim.core.session_state import SessionRegistry
    return SessionRegistry(clock=clock)


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def coordinator(registry, resolver, engine, clock, error_handler):
    from dxsim.core.session_coordinator import SessionCoordinator
    return SessionCoordinator(
        registry, resolver,
        engine_factory=lambda: engine,
        prompt_loader=lambda: SYSTEM_PROMPT,
        clock=clock,
        error_handler=error_handler
    )


@pytest.fixture
def driver(coordinator, error_handler):
    from dxsim.core.response_driver import ResponseDriver
    return ResponseDriver(coordinator, chunk_delay=0, error_handler=error_handler)


@pytest.fixture
def catalog(store):
    from dxsim.case_library.catalog import CaseCatalog
    return CaseCatalog(store, rng=random.Random(7))


@pytest.fixture
def app(catalog, coordinator, driver, error_handler):
    from dxsim.server import create_app
    flask_app = create_app(catalog, coordinator, driver, error_handler, rate_limiting=False)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def case_objects(case_a, case_b):
    return Case.from_record(case_a), Case.from_record(case_b)


@pytest.fixture
def engine_failure():
    return EngineInvocationError("quota exceeded")
