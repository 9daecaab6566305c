"""
test_server.py — HTTP-level tests for the Nox Agent service.

Runs the real handler on an ephemeral port with a fake search provider and a
fake fetcher, so nothing leaves the machine.
"""

import json
import threading
import time
import urllib.error
import urllib.request

import pytest

from noxagent.identity import AgentIdentity, verify_output
from noxagent.research import SearchResult
from noxagent.scraper import Page
from noxagent.server import AgentApp, ServerConfig, make_server, normalize_input_data
from noxagent.url_guard import TargetValidator


OPERATOR_KEY = "op-secret"
PAID = {"X-PAYMENT": "dGVzdG5ldC1wYXltZW50"}


def fake_search(query, count):
    return [SearchResult(title=f"{query} {i}", url=f"https://r{i}.example/", snippet="s")
            for i in range(count)]


class FakeFetcher:
    def __init__(self):
        self.validator = TargetValidator()

    def fetch(self, url):
        return Page(url=url, status=200, content_type="text/html",
                    title="Example", text="Example Domain. This domain is for use in examples.")


def start(app):
    server = make_server(app, host="127.0.0.1", port=0)
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server, f"http://127.0.0.1:{server.server_address[1]}"


def call(base, method, path, data=None, headers=None, raw=None):
    """Returns (status, parsed body, headers) without raising on HTTP errors."""
    hdrs = {"Content-Type": "application/json"}
    hdrs.update(headers or {})
    body = raw if raw is not None else (json.dumps(data).encode() if data is not None else None)
    req = urllib.request.Request(f"{base}{path}", data=body, headers=hdrs, method=method)
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            status, content, resp_headers = resp.status, resp.read(), dict(resp.headers)
    except urllib.error.HTTPError as e:
        status, content, resp_headers = e.code, e.read(), dict(e.headers)
    try:
        parsed = json.loads(content) if content else None
    except json.JSONDecodeError:
        parsed = content.decode()
    return status, parsed, resp_headers


def wait_for_status(base, job_id, wanted, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        _, body, _ = call(base, "GET", f"/status?job_id={job_id}")
        if body["status"] in wanted:
            return body
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {wanted}")


@pytest.fixture(scope="module")
def app():
    config = ServerConfig(testnet_mode=True, operator_key=OPERATOR_KEY, rate_max=1000,
                          max_body_bytes=2048, public_url="https://nox.example")
    return AgentApp(config, identity=AgentIdentity.generate(), search=fake_search,
                    fetcher=FakeFetcher())


@pytest.fixture(scope="module")
def base(app):
    server, url = start(app)
    yield url
    server.shutdown()


@pytest.fixture(scope="module")
def limited_base():
    config = ServerConfig(testnet_mode=True, rate_max=3, rate_window_s=60)
    app = AgentApp(config, identity=AgentIdentity.generate())
    server, url = start(app)
    yield url
    server.shutdown()


# ── Free endpoints ────────────────────────────────────────────────────────────

class TestFreeEndpoints:

    def test_health(self, base, app):
        status, body, headers = call(base, "GET", "/health", headers={"X-Request-Id": "rid-1"})
        assert status == 200
        assert body["status"] == "ok"
        assert body["agent_id"] == app.identity.agent_id
        assert headers["X-Request-Id"] == "rid-1"
        assert headers["Access-Control-Allow-Origin"] == "*"

    def test_root_describes_service(self, base):
        _, body, _ = call(base, "GET", "/")
        assert body["name"] == "Nox Agent Service"
        assert "POST /research" in body["endpoints"]

    def test_availability(self, base):
        _, body, _ = call(base, "GET", "/availability")
        assert body["status"] == "available"
        assert body["pricing"]["web-research-deep"] == 10
        assert "hitl-verification" in body["services"]

    def test_input_schema(self, base):
        _, body, _ = call(base, "GET", "/input_schema")
        ids = [f["id"] for f in body["input_data"]]
        assert "query" in ids and "urls" in ids and "task" in ids

    def test_status_requires_job_id(self, base):
        assert call(base, "GET", "/status")[0] == 400
        assert call(base, "GET", "/status?job_id=job-nope")[0] == 404

    def test_metrics(self, base):
        status, body, _ = call(base, "GET", "/metrics")
        assert status == 200
        assert "noxagent_requests_total" in body
        assert 'noxagent_jobs{status="completed"}' in body

    def test_unknown_route(self, base):
        assert call(base, "GET", "/nope")[0] == 404
        assert call(base, "POST", "/nope", {})[0] == 404

    def test_options_cors(self, base):
        req = urllib.request.Request(f"{base}/research", method="OPTIONS")
        with urllib.request.urlopen(req) as resp:
            assert resp.status == 204
            assert "X-PAYMENT" in resp.headers["Access-Control-Allow-Headers"]


# ── Request hygiene ───────────────────────────────────────────────────────────

class TestRequestHygiene:

    def test_bad_json(self, base):
        status, body, _ = call(base, "POST", "/research", raw=b"not json{")
        assert status == 400
        assert "Invalid JSON" in body["error"]

    def test_non_object_json(self, base):
        assert call(base, "POST", "/research", raw=b"[1, 2]")[0] == 400

    def test_body_too_large(self, base):
        status, _, _ = call(base, "POST", "/research", {"query": "x" * 4000})
        assert status == 413


# ── Paid endpoints ────────────────────────────────────────────────────────────

class TestResearch:

    def test_unpaid_gets_402(self, base):
        status, body, _ = call(base, "POST", "/research", {"query": "x402", "depth": "deep"})
        assert status == 402
        assert body["paymentRequirements"]["accepts"][0]["maxAmountRequired"] == "10000000"
        assert body["paymentRequirements"]["accepts"][0]["resource"] == "https://nox.example/web-research"

    def test_invalid_input_rejected_before_payment(self, base):
        assert call(base, "POST", "/research", {"query": ""})[0] == 400
        assert call(base, "POST", "/research", {"query": "q", "depth": "abyss"})[0] == 400

    def test_paid_research_is_signed(self, base):
        status, body, _ = call(base, "POST", "/research", {"query": "agents"}, headers=PAID)
        assert status == 200
        assert body["status"] == "success"
        assert body["count"] == 5
        _, job, _ = call(base, "GET", f"/status?job_id={body['job_id']}")
        assert job["status"] == "completed"
        assert verify_output(job["result"], job)


class TestScrape:

    def test_internal_target_rejected_without_charging(self, base):
        status, body, _ = call(base, "POST", "/scrape", {"url": "http://169.254.169.254/latest/meta-data"})
        assert status == 400
        assert body["error"] == "URL not allowed"
        assert body["reason"] == "internal address"

    def test_bad_scheme(self, base):
        status, body, _ = call(base, "POST", "/scrape", {"url": "file:///etc/passwd"}, headers=PAID)
        assert status == 400
        assert body["reason"] == "invalid URL"

    def test_multi_priced_higher(self, base):
        status, body, _ = call(base, "POST", "/scrape",
                               {"urls": ["https://example.com/", "https://example.org/"]})
        assert status == 402
        assert body["message"] == "This service costs $8 USD"

    def test_paid_scrape(self, base):
        status, body, _ = call(base, "POST", "/scrape",
                               {"url": "https://example.com/", "selector": "for use"}, headers=PAID)
        assert status == 200
        assert body["tier"] == "single"
        assert "for use" in body["pages"][0]["excerpt"]


class TestHumanReview:

    def test_hitl_flow(self, base):
        status, body, _ = call(base, "POST", "/hitl",
                               {"task": "Is this invoice legit?", "urgency": "urgent"}, headers=PAID)
        assert status == 200
        assert body["status"] == "pending"
        assert body["estimatedTime"] == "1-4 hours"
        job_id = body["jobId"]

        _, job, _ = call(base, "GET", f"/status?job_id={job_id}")
        assert job["status"] == "awaiting_input"

        answer = {"job_id": job_id, "input_data": [{"key": "verdict", "value": "legit"}]}
        assert call(base, "POST", "/provide_input", answer)[0] == 401
        status, body, _ = call(base, "POST", "/provide_input", answer,
                               headers={"Authorization": f"Bearer {OPERATOR_KEY}"})
        assert status == 200
        assert body["status"] == "completed"
        assert body["result"]["review"] == {"verdict": "legit"}

    def test_hitl_requires_task(self, base):
        assert call(base, "POST", "/hitl", {"urgency": "normal"}, headers=PAID)[0] == 400

    def test_hitl_price_by_complexity(self, base):
        _, body, _ = call(base, "POST", "/hitl", {"task": "t", "complexity": "complex"})
        assert body["message"] == "This service costs $50 USD"

    def test_operator_listing(self, base):
        assert call(base, "GET", "/jobs")[0] == 401
        status, body, _ = call(base, "GET", "/jobs?status=completed",
                               headers={"Authorization": f"Bearer {OPERATOR_KEY}"})
        assert status == 200
        assert all(j["status"] == "completed" for j in body["jobs"])


# ── MIP-003 start_job ─────────────────────────────────────────────────────────

class TestStartJob:

    def test_pay_later_flow(self, base):
        start_body = {
            "service": "web-research",
            "identifier_from_purchaser": "buyer-7",
            "input_data": [{"key": "query", "value": "masumi"}, {"key": "depth", "value": "quick"}],
        }
        status, body, _ = call(base, "POST", "/start_job", start_body)
        assert status == 402
        job_id = body["job_id"]
        _, job, _ = call(base, "GET", f"/status?job_id={job_id}")
        assert job["status"] == "awaiting_payment"
        assert job["input_hash"] == body["input_hash"]

        status, body, _ = call(base, "POST", "/start_job", {"job_id": job_id}, headers=PAID)
        assert status == 200
        assert body["job_id"] == job_id
        done = wait_for_status(base, job_id, {"completed", "failed"})
        assert done["status"] == "completed"
        assert done["result"]["query"] == "masumi"

        status, _, _ = call(base, "POST", "/start_job", {"job_id": job_id}, headers=PAID)
        assert status == 400

    def test_paid_scrape_job(self, base):
        status, body, _ = call(base, "POST", "/start_job", {
            "service": "web-scraping", "input_data": {"urls": ["https://example.com/"]},
        }, headers=PAID)
        assert status == 200
        done = wait_for_status(base, body["job_id"], {"completed", "failed"})
        assert done["result"]["pages"][0]["title"] == "Example"

    def test_hitl_job_waits_for_input(self, base):
        status, body, _ = call(base, "POST", "/start_job", {
            "service": "hitl-verification", "input_data": {"task": "review"},
        }, headers=PAID)
        assert status == 200
        _, job, _ = call(base, "GET", f"/status?job_id={body['job_id']}")
        assert job["status"] == "awaiting_input"

    def test_unknown_service(self, base):
        assert call(base, "POST", "/start_job", {"service": "teleport"}, headers=PAID)[0] == 400

    def test_unknown_job_id(self, base):
        assert call(base, "POST", "/start_job", {"job_id": "job-nope"}, headers=PAID)[0] == 404


# ── Rate limiting ─────────────────────────────────────────────────────────────

class TestRateLimiting:

    def test_429_after_budget(self, limited_base):
        hdrs = {"X-Forwarded-For": "203.0.113.50, 198.51.100.1"}
        for _ in range(3):
            assert call(limited_base, "GET", "/health", headers=hdrs)[0] == 200
        status, body, headers = call(limited_base, "GET", "/health", headers=hdrs)
        assert status == 429
        assert 0 <= body["retry_after_seconds"] <= 60
        assert headers["Retry-After"] == str(body["retry_after_seconds"])

    def test_other_client_unaffected(self, limited_base):
        hdrs = {"X-Forwarded-For": "198.51.100.2"}
        assert call(limited_base, "GET", "/health", headers=hdrs)[0] == 200

    def test_research_without_provider_is_503(self, limited_base):
        hdrs = {"X-Forwarded-For": "198.51.100.3", **PAID}
        status, body, _ = call(limited_base, "POST", "/research", {"query": "q"}, headers=hdrs)
        assert status == 503

    def test_research_without_provider_refused_before_payment(self, limited_base):
        hdrs = {"X-Forwarded-For": "198.51.100.6"}
        status, body, _ = call(limited_base, "POST", "/research", {"query": "q"}, headers=hdrs)
        assert status == 503
        assert "paymentRequirements" not in body
        status, _, _ = call(limited_base, "POST", "/start_job", {
            "service": "web-research", "input_data": {"query": "q"},
        }, headers=hdrs)
        assert status == 503

    def test_spoofed_leftmost_hop_does_not_reset_budget(self, limited_base):
        for i in range(3):
            hdrs = {"X-Forwarded-For": f"192.0.2.{i}, 198.51.100.7"}
            assert call(limited_base, "GET", "/health", headers=hdrs)[0] == 200
        hdrs = {"X-Forwarded-For": "192.0.2.99, 198.51.100.7"}
        assert call(limited_base, "GET", "/health", headers=hdrs)[0] == 429

    def test_preflight_is_rate_limited(self, limited_base):
        hdrs = {"X-Forwarded-For": "198.51.100.8"}
        for _ in range(3):
            status, _, headers = call(limited_base, "OPTIONS", "/research", headers=hdrs)
            assert status == 204
            assert headers["X-Request-Id"]
        assert call(limited_base, "OPTIONS", "/research", headers=hdrs)[0] == 429

    def test_operator_endpoints_disabled_without_key(self, limited_base):
        hdrs = {"X-Forwarded-For": "198.51.100.4"}
        assert call(limited_base, "POST", "/provide_input", {"job_id": "x"}, headers=hdrs)[0] == 403


def test_normalize_input_data():
    assert normalize_input_data([{"key": "a", "value": 1}]) == {"a": 1}
    assert normalize_input_data({"a": 1}) == {"a": 1}
    assert normalize_input_data(None) == {}
    with pytest.raises(ValueError):
        normalize_input_data("a=1")
    with pytest.raises(ValueError):
        normalize_input_data([{"value": 1}])


# ── Resource bounds and failure handling ──────────────────────────────────────

@pytest.fixture
def small_app():
    config = ServerConfig(testnet_mode=True, rate_max=1000, max_unpaid_jobs=5,
                          unpaid_job_ttl_s=30, trusted_proxies=0)
    app = AgentApp(config, identity=AgentIdentity.generate(), search=fake_search)
    server, url = start(app)
    yield app, url
    server.shutdown()


class TestResourceBounds:

    def test_unpaid_start_jobs_are_capped(self, small_app):
        app, url = small_app
        body = {"service": "web-research", "input_data": {"query": "q"}}
        job_ids = []
        for i in range(40):
            status, answer, _ = call(url, "POST", "/start_job", body,
                                     headers={"X-Forwarded-For": f"192.0.2.{i}"})
            assert status == 402
            job_ids.append(answer["job_id"])
        assert len(app.jobs) == 5
        assert call(url, "GET", f"/status?job_id={job_ids[0]}")[0] == 404
        assert call(url, "GET", f"/status?job_id={job_ids[-1]}")[0] == 200

    def test_forwarded_header_ignored_without_trusted_proxy(self, small_app):
        app, url = small_app
        call(url, "GET", "/health", headers={"X-Forwarded-For": "192.0.2.1"})
        call(url, "GET", "/health", headers={"X-Forwarded-For": "192.0.2.2"})
        assert len(app.limiter) == 1
        assert app.limiter.get("127.0.0.1") is not None

    def test_get_handler_crash_is_500(self, small_app, monkeypatch):
        app, url = small_app

        def boom(job_id):
            raise RuntimeError("store offline")

        monkeypatch.setattr(app.jobs, "get", boom)
        status, body, headers = call(url, "GET", "/status?job_id=job-x")
        assert status == 500
        assert body["error"] == "Internal server error"
        assert "store offline" not in json.dumps(body)
        assert headers["X-Request-Id"] == body["request_id"]
