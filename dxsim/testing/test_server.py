"""
HTTP Service Tests

Exercises every endpoint through Flask's test client with the in-memory
store and scripted engine wired in via create_app().
"""

import gc
import json
import logging
import pytest
from unittest.mock import MagicMock

from dxsim.core.error_handler import EngineInitializationError
from dxsim.core.session_coordinator import SessionCoordinator
from dxsim.server import create_app, SESSION_HEADER
from conftest import FILE_PREFIX, make_case


def parse_sse(response):
    events = []
    for block in response.get_data(as_text=True).split("\n\n"):
        block = block.strip()
        if block.startswith("data: "):
            events.append(json.loads(block[6:]))
    return events


def chat_body(case, message="[Question] How long?", history=None):
    return {"message": message, "conversationHistory": history or [], "caseData": case}


# =============================================================================
# HEALTH AND LIBRARY
# =============================================================================

class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        data = response.get_json()

        assert response.status_code == 200
        assert data["status"] == "healthy"
        assert data["engine_ready"] is False
        assert data["active_sessions"] == 0

    def test_request_id_echoed(self, client):
        response = client.get("/api/cases", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/api/datasets")
        assert response.headers.get("X-Request-ID")

    def test_request_id_on_session_log_lines(self, client, case_a, caplog):
        with caplog.at_level(logging.INFO, logger="dxsim.session"):
            client.post("/api/initialize", json={"caseData": case_a}, headers={"X-Request-ID": "req-init-1"})

        switch_lines = [r.getMessage() for r in caplog.records
                        if r.name == "dxsim.session" and "case switch" in r.getMessage()]
        assert switch_lines
        assert all("[req-init-1]" in line for line in switch_lines)


class TestLibraryEndpoints:

    def test_list_cases(self, client):
        response = client.get("/api/cases")

        assert response.status_code == 200
        assert [c["id"] for c in response.get_json()["cases"]] == ["case-a", "case-b"]

    def test_list_cases_drops_invalid(self, client, store):
        store.cases.append(make_case("broken", clinical_vignette=""))

        ids = [c["id"] for c in client.get("/api/cases").get_json()["cases"]]

        assert "broken" not in ids

    def test_list_cases_by_dataset(self, client, store):
        store.cases.append(make_case("jama-1", dataset="jama"))

        cases = client.get("/api/cases?dataset=jama").get_json()["cases"]

        assert [c["id"] for c in cases] == ["jama-1"]

    def test_list_cases_store_failure(self, client, store):
        store.fail_listing = True

        response = client.get("/api/cases")

        assert response.status_code == 500
        assert response.get_json() == {"cases": [], "error": "Failed to fetch cases"}

    def test_random_case(self, client):
        data = client.get("/api/random-case").get_json()
        assert data["success"] is True
        assert data["case"]["id"] in ("case-a", "case-b")

    def test_random_case_empty_store(self, client, store):
        store.cases = []

        response = client.get("/api/random-case")

        assert response.status_code == 404
        assert response.get_json()["error"] == "No cases found"

    def test_random_case_all_invalid(self, client, store):
        store.cases = [make_case("bad", title="")]

        response = client.get("/api/random-case")

        assert response.status_code == 500
        assert response.get_json()["error"] == "Failed to find a valid random case"

    def test_datasets(self, client, store):
        store.datasets = [{"id": "d1", "name": "nejm"}]
        assert client.get("/api/datasets").get_json()["datasets"][0]["name"] == "nejm"


# =============================================================================
# INITIALISE
# =============================================================================

class TestInitialize:

    def test_with_reference(self, client, case_a):
        data = client.post("/api/initialize", json={"caseId": "case-a", "caseData": case_a}).get_json()

        assert data == {
            "success": True,
            "fileUri": f"{FILE_PREFIX}case-a",
            "initialResponse": case_a["clinical_vignette"],
            "caseId": "case-a",
        }

    def test_without_reference(self, client, case_b):
        data = client.post("/api/initialize", json={"caseId": "case-b", "caseData": case_b}).get_json()

        assert data["success"] is True
        assert data["fileUri"] == "no-pdf-available"
        assert data["initialResponse"] == case_b["clinical_vignette"]

    def test_legacy_without_case(self, client):
        data = client.post("/api/initialize", json={}).get_json()

        assert data["success"] is True
        assert data["fileUri"] == "no-file"
        assert "Legacy initialization" in data["initialResponse"]

    def test_cold_start_failure(self, catalog, registry, resolver, driver, error_handler, case_a):
        coordinator = SessionCoordinator(registry, resolver,
                                         engine_factory=MagicMock(side_effect=EngineInitializationError("no key")),
                                         prompt_loader=lambda: "prompt")
        driver.coordinator = coordinator
        app = create_app(catalog, coordinator, driver, error_handler, rate_limiting=False)

        response = app.test_client().post("/api/initialize", json={"caseData": case_a})

        assert response.status_code == 500
        assert response.get_json() == {"success": False, "error": "Failed to initialize gatekeeper"}

    def test_session_endpoint(self, client, case_a):
        client.post("/api/initialize", json={"caseData": case_a}, headers={SESSION_HEADER: "s1"})

        session = client.get("/api/session", headers={SESSION_HEADER: "s1"}).get_json()["session"]

        assert session["active_case_id"] == "case-a"
        assert client.get("/api/session", headers={SESSION_HEADER: "nobody"}).status_code == 404


# =============================================================================
# CHAT
# =============================================================================

class TestChat:

    def test_streams_chunks_then_done(self, client, case_a, engine):
        response = client.post("/api/chat", json=chat_body(case_a))

        assert response.status_code == 200
        assert response.mimetype == "text/event-stream"
        events = parse_sse(response)
        assert events[-1] == {"type": "done", "content": engine.answer}
        chunks = [e for e in events if e["type"] == "chunk"]
        assert "".join(e["content"] for e in chunks) == engine.answer
        assert chunks[-1]["fullContent"] == engine.answer

    def test_message_required(self, client, case_a):
        response = client.post("/api/chat", json=chat_body(case_a, message="   "))

        assert response.status_code == 400
        assert response.get_json()["error"] == "Message is required"

    def test_engine_failure_is_error_event(self, client, case_a, engine, engine_failure):
        engine.error = engine_failure

        events = parse_sse(client.post("/api/chat", json=chat_body(case_a)))

        assert events == [{"type": "error", "error": "Failed to process message: quota exceeded"}]

    def test_gatekeeper_not_initialized(self, catalog, registry, resolver, driver, error_handler, case_a):
        coordinator = SessionCoordinator(registry, resolver,
                                         engine_factory=MagicMock(side_effect=RuntimeError("no key")),
                                         prompt_loader=lambda: "prompt")
        app = create_app(catalog, coordinator, driver, error_handler, rate_limiting=False)

        response = app.test_client().post("/api/chat", json=chat_body(case_a))

        assert response.status_code == 500
        assert response.get_json()["error"] == "Gatekeeper not initialized"

    def test_history_forwarded(self, client, case_a, engine):
        history = [{"role": "assistant", "content": case_a["clinical_vignette"]}, {"bogus": True}]

        parse_sse(client.post("/api/chat", json=chat_body(case_a, history=history)))

        texts = [t.text for t in engine.last_turns if not t.is_attachment]
        assert texts == [case_a["clinical_vignette"], "[Question] How long?"]


@pytest.mark.critical
class TestNoCrossCaseLeakage:

    def test_switch_within_session(self, client, store, clock, case_a, case_b, engine):
        parse_sse(client.post("/api/chat", json=chat_body(case_a)))
        assert engine.last_attachment_uris == [f"{FILE_PREFIX}case-a"]

        # B has no document: A's must not be sent
        parse_sse(client.post("/api/chat", json=chat_body(case_b)))
        assert engine.last_attachment_uris == []

        store.add_reference("case-b", clock.now)
        parse_sse(client.post("/api/chat", json=chat_body(case_a)))
        parse_sse(client.post("/api/chat", json=chat_body(case_b)))
        assert engine.last_attachment_uris == [f"{FILE_PREFIX}case-b"]

    def test_sessions_isolated_by_header(self, client, store, clock, case_a, case_b, engine):
        store.add_reference("case-b", clock.now)

        parse_sse(client.post("/api/chat", json=chat_body(case_a), headers={SESSION_HEADER: "alice"}))
        parse_sse(client.post("/api/chat", json=chat_body(case_b), headers={SESSION_HEADER: "bob"}))
        parse_sse(client.post("/api/chat", json=chat_body(case_a), headers={SESSION_HEADER: "alice"}))

        assert engine.last_attachment_uris == [f"{FILE_PREFIX}case-a"]
        assert store.reference_calls == ["case-a", "case-b"]

    def test_session_id_from_body(self, client, case_a, coordinator):
        body = dict(chat_body(case_a), sessionId="from-body")
        parse_sse(client.post("/api/chat", json=body))

        assert coordinator.describe_session("from-body")["active_case_id"] == "case-a"

    def test_chat_without_case_data_uses_default_session(self, client, case_a, coordinator, engine):
        client.post("/api/initialize", json={"caseData": case_a})

        parse_sse(client.post("/api/chat", json={"message": "[Question] Hi"}))

        assert engine.last_attachment_uris == [f"{FILE_PREFIX}case-a"]
        assert coordinator.describe_session("default")["active_case_id"] == "case-a"


class TestEndSession:

    def test_delete_session(self, client, case_a):
        client.post("/api/initialize", json={"caseData": case_a}, headers={SESSION_HEADER: "s1"})

        first = client.delete("/api/session", headers={SESSION_HEADER: "s1"}).get_json()
        second = client.delete("/api/session", headers={SESSION_HEADER: "s1"}).get_json()

        assert first == {"success": True, "removed": True, "sessionId": "s1"}
        assert second["removed"] is False


class TestCaseDataWithoutId:
    """Case data that can't be identified must never be served another case's document."""

    def test_chat_detaches_from_previous_case(self, client, case_a, case_b, engine, coordinator):
        parse_sse(client.post("/api/chat", json=chat_body(case_a)))
        assert engine.last_attachment_uris == [f"{FILE_PREFIX}case-a"]

        anonymous_b = {k: v for k, v in case_b.items() if k != "id"}
        events = parse_sse(client.post("/api/chat", json=chat_body(anonymous_b)))

        assert events[-1]["type"] == "done"
        assert engine.last_attachment_uris == []
        assert coordinator.describe_session("default")["active_case_id"] is None

    def test_chat_blank_id_detaches(self, client, case_a, engine):
        parse_sse(client.post("/api/chat", json=chat_body(case_a)))

        parse_sse(client.post("/api/chat", json=chat_body(dict(case_a, id="  "))))

        assert engine.last_attachment_uris == []

    def test_initialize_detaches_from_previous_case(self, client, case_a, case_b):
        client.post("/api/initialize", json={"caseData": case_a})

        anonymous_b = {k: v for k, v in case_b.items() if k != "id"}
        data = client.post("/api/initialize", json={"caseData": anonymous_b}).get_json()

        assert data == {
            "success": True,
            "fileUri": "no-pdf-available",
            "initialResponse": case_b["clinical_vignette"],
            "caseId": None,
        }

    def test_initialize_uses_explicit_case_id(self, client, case_a):
        anonymous_a = {k: v for k, v in case_a.items() if k != "id"}

        data = client.post("/api/initialize", json={"caseId": "case-a", "caseData": anonymous_a}).get_json()

        assert data["caseId"] == "case-a"
        assert data["fileUri"] == f"{FILE_PREFIX}case-a"


class TestRateLimitedApp:

    def test_chat_streams_with_limiter_enabled(self, catalog, coordinator, driver, error_handler, case_a, engine):
        """The limiter must outlive create_app(); the chat route wraps it."""
        app = create_app(catalog, coordinator, driver, error_handler, rate_limiting=True)
        gc.collect()

        response = app.test_client().post("/api/chat", json=chat_body(case_a))

        assert response.status_code == 200
        assert parse_sse(response)[-1] == {"type": "done", "content": engine.answer}
        assert app.extensions["dxsim"]["limiter"] is not None

    def test_chat_limit_enforced(self, catalog, coordinator, driver, error_handler, case_a):
        app = create_app(catalog, coordinator, driver, error_handler, rate_limiting=True)
        client = app.test_client()

        statuses = [client.post("/api/chat", json=chat_body(case_a)).status_code for _ in range(31)]

        assert statuses[:30] == [200] * 30
        assert statuses[30] == 429

    def test_event_stream_sets_no_cors_headers(self, client, case_a):
        response = client.post("/api/chat", json=chat_body(case_a))

        assert response.headers.get("Cache-Control") == "no-cache"
        assert "Access-Control-Allow-Origin" not in response.headers
