"""
Nox Agent HTTP service — paid agent capabilities behind an x402 payment gate.

Every request goes through:
  - Rate limiting (fixed window per client IP, 429 + Retry-After)
  - Request size cap (413)
  - Request ID tracking (X-Request-Id)
  - Structured JSON logging
  - CORS headers

Routes:
  GET  /                 service description (free)
  GET  /health           health check (free)
  GET  /availability     MIP-003 availability + pricing (free)
  GET  /input_schema     MIP-003 input schema (free)
  GET  /status?job_id=   MIP-003 job status (free)
  GET  /metrics          Prometheus text metrics (free)
  GET  /jobs             job listing (operator)
  POST /research         web research        ($5 quick / $10 deep)
  POST /scrape           web scraping        ($3 single / $8 multi)
  POST /hitl             human verification  ($20 / $35 / $50)
  POST /start_job        MIP-003 job start   (priced per service/tier)
  POST /provide_input    resolve a human review job (operator)

Usage:
    noxagent serve [--port 3000] [--host 0.0.0.0] [--testnet]
"""

import json
import logging
import os
import signal
import threading
import time
import uuid
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional
from urllib.parse import parse_qs, urlparse

from noxagent import __version__
from noxagent.identity import AgentIdentity
from noxagent.jobs import JobStatus, JobStore
from noxagent.payments import DEFAULT_FACILITATOR_URL, PRICING, PaymentGate, flat_pricing, price_for
from noxagent.rate_limiter import RateLimiter
from noxagent.research import DEPTHS, SearchClient, SearchError, research
from noxagent.scraper import FetchError, Fetcher, UnsafeTargetError, scrape, scrape_tier
from noxagent.url_guard import TargetValidator


# ── Structured Logging ──────────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    def format(self, record):
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if hasattr(record, "request_id"):
            entry["request_id"] = record.request_id
        if hasattr(record, "client_ip"):
            entry["client_ip"] = record.client_ip
        if hasattr(record, "method"):
            entry["method"] = record.method
        if hasattr(record, "path"):
            entry["path_"] = record.path
        if hasattr(record, "status_code"):
            entry["status"] = record.status_code
        if hasattr(record, "duration_ms"):
            entry["duration_ms"] = record.duration_ms
        if hasattr(record, "extra_data"):
            entry.update(record.extra_data)
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


logger = logging.getLogger("noxagent")


def configure_logging(level: str = "INFO"):
    """Install the JSON handler on the noxagent logger (idempotent)."""
    logger.setLevel(level.upper())
    if not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.propagate = False


# ── Config ──────────────────────────────────────────────────────────────────

DEFAULT_EVM_WALLET = "0x884428a7e667A8AC04EF904Ad8ec75E55bbC9Ad7"
DEFAULT_CARDANO_WALLET = (
    "addr_test1qr02ugx4tngn8uc5e5v8mtu2fpfprms4u6uzy0vvtgknudzkrj73vaz964ac2s5qm8rs7l05hq0vngcx0gpsxj0rzxzs7paafj"
)
DEFAULT_MASUMI_AGENT_ID = "cml1fwd6l000c5cmhr2b6ooi5"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    public_url: str = "https://nox-agent.masumi.network"
    evm_wallet: str = DEFAULT_EVM_WALLET
    cardano_wallet: str = DEFAULT_CARDANO_WALLET
    facilitator_url: str = DEFAULT_FACILITATOR_URL
    masumi_payment_url: Optional[str] = None
    masumi_agent_id: str = DEFAULT_MASUMI_AGENT_ID
    testnet_mode: bool = False            # accept any X-PAYMENT header
    search_api_key: Optional[str] = None
    keyfile: Optional[str] = None         # Ed25519 key used to sign job results
    operator_key: Optional[str] = None    # Bearer key for /provide_input and /jobs
    trusted_proxies: int = 1              # reverse proxies in front that append to X-Forwarded-For
    rate_window_s: float = 60.0
    rate_max: int = 10
    unpaid_job_ttl_s: float = 900.0
    max_unpaid_jobs: int = 1000
    max_body_bytes: int = 64 * 1024
    fetch_timeout_s: float = 15.0
    cors_origins: str = "*"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        env = os.environ
        c = cls()
        c.host = env.get("NOX_HOST", c.host)
        c.port = int(env.get("NOX_PORT", env.get("PORT", c.port)))
        c.public_url = env.get("NOX_PUBLIC_URL", c.public_url)
        c.evm_wallet = env.get("NOX_EVM_WALLET", env.get("EVM_WALLET", c.evm_wallet))
        c.cardano_wallet = env.get("NOX_CARDANO_WALLET", env.get("CARDANO_WALLET", c.cardano_wallet))
        c.facilitator_url = env.get("X402_FACILITATOR_URL", c.facilitator_url)
        c.masumi_payment_url = env.get("MASUMI_PAYMENT_URL", c.masumi_payment_url)
        c.masumi_agent_id = env.get("NOX_MASUMI_AGENT_ID", c.masumi_agent_id)
        c.testnet_mode = _env_bool("NOX_TESTNET_MODE", c.testnet_mode)
        c.search_api_key = env.get("NOX_SEARCH_API_KEY", env.get("BRAVE_API_KEY", c.search_api_key))
        c.keyfile = env.get("NOX_KEYFILE", c.keyfile)
        c.operator_key = env.get("NOX_OPERATOR_KEY", c.operator_key)
        c.trusted_proxies = int(env.get("NOX_TRUSTED_PROXIES", c.trusted_proxies))
        c.rate_window_s = float(env.get("NOX_RATE_WINDOW", c.rate_window_s))
        c.rate_max = int(env.get("NOX_RATE_MAX", c.rate_max))
        c.unpaid_job_ttl_s = float(env.get("NOX_UNPAID_JOB_TTL", c.unpaid_job_ttl_s))
        c.max_unpaid_jobs = int(env.get("NOX_MAX_UNPAID_JOBS", c.max_unpaid_jobs))
        c.max_body_bytes = int(env.get("NOX_MAX_BODY", c.max_body_bytes))
        c.fetch_timeout_s = float(env.get("NOX_FETCH_TIMEOUT", c.fetch_timeout_s))
        c.cors_origins = env.get("NOX_CORS_ORIGINS", c.cors_origins)
        c.log_level = env.get("NOX_LOG_LEVEL", c.log_level)
        return c


# ── Application state ──────────────────────────────────────────────────────

SERVICES = {
    "web-research": "Web research via search API (quick: 5 results, deep: 10 + page excerpts)",
    "web-scraping": "Fetch and extract text/links from up to 5 public URLs",
    "hitl-verification": "Human-in-the-loop review of a task, answered asynchronously",
}

HITL_COMPLEXITY = tuple(PRICING["hitl-verification"])


class AgentApp:
    """Everything the handlers share: guard, payment gate, job store, workers."""

    def __init__(
        self,
        config: ServerConfig,
        identity: Optional[AgentIdentity] = None,
        limiter: Optional[RateLimiter] = None,
        validator: Optional[TargetValidator] = None,
        fetcher: Optional[Fetcher] = None,
        search=None,
    ):
        self.config = config
        self.identity = identity or AgentIdentity.load_or_create(config.keyfile)
        self.limiter = limiter or RateLimiter(config.rate_window_s, config.rate_max)
        self.validator = validator or TargetValidator()
        self.fetcher = fetcher or Fetcher(self.validator, timeout=config.fetch_timeout_s)
        if search is None and config.search_api_key:
            search = SearchClient(config.search_api_key).search
        self.search = search
        self.gate = PaymentGate(
            evm_wallet=config.evm_wallet,
            cardano_wallet=config.cardano_wallet,
            public_url=config.public_url,
            facilitator_url=config.facilitator_url,
            masumi_payment_url=config.masumi_payment_url,
            masumi_agent_id=config.masumi_agent_id,
            testnet_mode=config.testnet_mode,
        )
        self.jobs = JobStore(identity=self.identity, unpaid_ttl_s=config.unpaid_job_ttl_s,
                             max_unpaid=config.max_unpaid_jobs)
        self.started_at = time.time()
        self._counter_lock = threading.Lock()
        self.requests_served = 0
        self.requests_rate_limited = 0

    def count_request(self, rate_limited: bool = False):
        with self._counter_lock:
            self.requests_served += 1
            if rate_limited:
                self.requests_rate_limited += 1

    # ── Job planning / execution ────────────────────────────────────────────

    def plan(self, service: str, params: dict) -> tuple[str, dict]:
        """Validate parameters for a service. Returns (tier, normalised params)."""
        if not isinstance(params, dict):
            raise ValueError("input must be a JSON object")
        if service == "web-research":
            depth = params.get("depth", "quick")
            if depth not in DEPTHS:
                raise ValueError(f"depth must be one of {sorted(DEPTHS)}")
            query = params.get("query")
            if not isinstance(query, str) or not query.strip():
                raise ValueError("query is required")
            if self.search is None:
                raise SearchError("Search provider not configured", status=503)
            return depth, {"query": query, "depth": depth}
        if service == "web-scraping":
            urls = params.get("urls")
            if urls is None:
                urls = [params["url"]] if params.get("url") else []
            elif isinstance(urls, str):
                # MIP-003 values are strings: accept comma/whitespace separated URLs
                urls = [u for u in urls.replace(",", " ").split() if u]
            if not isinstance(urls, list) or not urls:
                raise ValueError("url or urls is required")
            for u in urls:
                if not isinstance(u, str):
                    raise ValueError("urls must be strings")
                outcome = self.validator.check_safe(u)
                if not outcome.safe:
                    raise UnsafeTargetError(outcome.reason)
            selector = params.get("selector")
            if selector is not None and not isinstance(selector, str):
                raise ValueError("selector must be a string")
            return scrape_tier(urls), {"urls": urls, "selector": selector}
        if service == "hitl-verification":
            task = params.get("task")
            if not isinstance(task, str) or not task.strip():
                raise ValueError("task is required")
            complexity = params.get("complexity", "simple")
            if complexity not in HITL_COMPLEXITY:
                raise ValueError(f"complexity must be one of {list(HITL_COMPLEXITY)}")
            urgency = params.get("urgency", "normal")
            return complexity, {
                "task": task,
                "context": params.get("context"),
                "urgency": urgency,
                "complexity": complexity,
            }
        raise ValueError(f"Unknown service: {service}")

    def execute(self, service: str, params: dict) -> dict:
        if service == "web-research":
            return research(params["query"], params["depth"], search=self.search, fetcher=self.fetcher)
        if service == "web-scraping":
            return scrape(self.fetcher, params["urls"], params.get("selector"))
        raise ValueError(f"{service} cannot be executed automatically")

    def run_job(self, job_id: str):
        """Run an automatic job to completion, recording failures on the job."""
        job = self.jobs.mark_running(job_id)
        try:
            result = self.execute(job.service, job.input_data)
        except (ValueError, SearchError, FetchError) as e:
            self.jobs.fail(job_id, str(e))
            logger.info("job failed", extra={"extra_data": {"job_id": job_id, "reason": str(e)}})
            return
        except Exception:
            self.jobs.fail(job_id, "Internal error")
            logger.exception("job crashed", extra={"extra_data": {"job_id": job_id}})
            return
        self.jobs.complete(job_id, result)
        logger.info("job completed", extra={"extra_data": {"job_id": job_id, "service": job.service}})

    def run_job_async(self, job_id: str) -> threading.Thread:
        t = threading.Thread(target=self.run_job, args=(job_id,), name=f"job-{job_id}", daemon=True)
        t.start()
        return t


def normalize_input_data(raw) -> dict:
    """MIP-003 sends [{"key": k, "value": v}, ...]; plain objects are accepted too."""
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, list):
        out = {}
        for item in raw:
            if not isinstance(item, dict) or "key" not in item:
                raise ValueError("input_data items must be {key, value} objects")
            out[item["key"]] = item.get("value")
        return out
    raise ValueError("input_data must be an object or a list of {key, value}")


# ── Handler ─────────────────────────────────────────────────────────────────

class NoxAgentHandler(BaseHTTPRequestHandler):
    app: AgentApp = None
    server_version = f"NoxAgent/{__version__}"

    def _get_request_id(self) -> str:
        return self.headers.get("X-Request-Id") or str(uuid.uuid4())[:12]

    def _get_client_ip(self) -> str:
        """
        Each trusted proxy appends the address it saw, so the client is the
        hop trusted_proxies places from the right. Anything further left is
        client-supplied and ignored.
        """
        peer = self.client_address[0]
        trusted = self.app.config.trusted_proxies
        forwarded = self.headers.get("X-Forwarded-For")
        if trusted <= 0 or not forwarded:
            return peer
        hops = [h.strip() for h in forwarded.split(",") if h.strip()]
        if not hops:
            return peer
        return hops[-min(trusted, len(hops))]

    def _cors_headers(self):
        self.send_header("Access-Control-Allow-Origin", self.app.config.cors_origins)
        self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
        self.send_header("Access-Control-Allow-Headers",
                         "Content-Type, Authorization, X-Request-Id, X-PAYMENT")
        self.send_header("Access-Control-Expose-Headers", "X-Request-Id, Retry-After")
        self.send_header("Access-Control-Max-Age", "86400")

    def _json_response(self, code: int, data: Any, headers: Optional[dict] = None):
        body = json.dumps(data, indent=2, default=str).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("X-Request-Id", self.request_id)
        for k, v in (headers or {}).items():
            self.send_header(k, v)
        self._cors_headers()
        self.end_headers()
        self.wfile.write(body)
        self.status_code = code

    def _error(self, code: int, message: str, **extra):
        self._json_response(code, {"error": message, "request_id": self.request_id, **extra})

    def _read_body(self) -> Optional[dict]:
        try:
            length = int(self.headers.get("Content-Length", 0))
        except ValueError:
            self._error(400, "Invalid Content-Length")
            return None
        if length > self.app.config.max_body_bytes:
            self._error(413, f"Request body too large ({length} bytes, max {self.app.config.max_body_bytes})")
            return None
        if length <= 0:
            return {}
        raw = self.rfile.read(length)
        try:
            body = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self._error(400, f"Invalid JSON: {e}")
            return None
        if not isinstance(body, dict):
            self._error(400, "JSON body must be an object")
            return None
        return body

    def _admit(self) -> bool:
        decision = self.app.limiter.admit(self.client_ip)
        if decision.allowed:
            return True
        retry = decision.retry_after_seconds
        self._json_response(429, {
            "error": "Rate limit exceeded",
            "request_id": self.request_id,
            "retry_after_seconds": retry,
        }, headers={"Retry-After": str(retry)})
        return False

    def _is_operator(self) -> bool:
        key = self.app.config.operator_key
        if not key:
            self._error(403, "Operator endpoints are disabled (no operator key configured)")
            return False
        if self.headers.get("Authorization", "") == f"Bearer {key}":
            return True
        self._error(401, "Unauthorized")
        return False

    def _charge(self, service: str, tier: str) -> bool:
        amount = price_for(service, tier)
        result = self.app.gate.check(self.headers.get("X-PAYMENT"), service, amount)
        if result.paid:
            return True
        self._json_response(result.status, {**(result.body or {}), "request_id": self.request_id})
        return False

    def _begin(self):
        self._started = time.monotonic()
        self.request_id = self._get_request_id()
        self.client_ip = self._get_client_ip()
        self.status_code = 200

    def _finish(self, method: str, rate_limited: bool = False):
        self.app.count_request(rate_limited)
        duration_ms = round((time.monotonic() - self._started) * 1000, 2)
        logger.info("request", extra={"request_id": self.request_id, "client_ip": self.client_ip,
                                       "method": method, "path": urlparse(self.path).path,
                                       "status_code": self.status_code, "duration_ms": duration_ms})

    def do_OPTIONS(self):
        self._begin()
        if not self._admit():
            self._finish("OPTIONS", rate_limited=True)
            return
        self.send_response(204)
        self.send_header("X-Request-Id", self.request_id)
        self._cors_headers()
        self.end_headers()
        self.status_code = 204
        self._finish("OPTIONS")

    def do_GET(self):
        self._begin()
        if not self._admit():
            self._finish("GET", rate_limited=True)
            return
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        try:
            if path == "/":
                self._json_response(200, self._describe())
            elif path == "/health":
                self._json_response(200, {
                    "status": "ok",
                    "agent": "Nox-Agent",
                    "version": __version__,
                    "agent_id": self.app.identity.agent_id,
                    "testnet_mode": self.app.config.testnet_mode,
                    "search_configured": self.app.search is not None,
                    "uptime_s": round(time.time() - self.app.started_at, 1),
                    "requests_served": self.app.requests_served,
                })
            elif path == "/availability":
                self._json_response(200, {
                    "status": "available",
                    "type": "masumi-agent",
                    "message": "Nox Agent is ready to accept jobs",
                    "services": list(SERVICES),
                    "pricing": flat_pricing(),
                })
            elif path == "/input_schema":
                self._json_response(200, input_schema())
            elif path == "/status":
                job_id = params.get("job_id")
                if not job_id:
                    self._error(400, "job_id is required")
                else:
                    job = self.app.jobs.get(job_id)
                    if job:
                        self._json_response(200, job.status_view())
                    else:
                        self._error(404, f"Job {job_id} not found")
            elif path == "/metrics":
                self._metrics()
            elif path == "/jobs":
                if self._is_operator():
                    status = JobStatus(params["status"]) if "status" in params else None
                    jobs = self.app.jobs.list_jobs(status=status, limit=int(params.get("limit", 50)))
                    self._json_response(200, {
                        "jobs": [j.to_dict() for j in jobs],
                        "count": len(jobs),
                        "stats": self.app.jobs.stats(),
                    })
            else:
                self._error(404, "Not found")
        except ValueError as e:
            self._error(400, str(e))
        except Exception as e:
            logger.error(f"Internal error: {e}", exc_info=True,
                         extra={"request_id": self.request_id, "client_ip": self.client_ip})
            self._error(500, "Internal server error")
        self._finish("GET")

    def do_POST(self):
        self._begin()
        if not self._admit():
            self._finish("POST", rate_limited=True)
            return
        path = urlparse(self.path).path.rstrip("/")
        body = self._read_body()
        if body is None:
            self._finish("POST")
            return

        try:
            if path == "/research":
                self._run_now("web-research", body)
            elif path == "/scrape":
                self._run_now("web-scraping", body)
            elif path == "/hitl":
                self._hitl(body)
            elif path == "/start_job":
                self._start_job(body)
            elif path == "/provide_input":
                self._provide_input(body)
            else:
                self._error(404, "Not found")
        except UnsafeTargetError as e:
            self._error(400, "URL not allowed", reason=e.reason)
        except ValueError as e:
            self._error(400, str(e))
        except SearchError as e:
            self._error(e.status, e.detail)
        except FetchError as e:
            self._error(502, str(e))
        except Exception as e:
            logger.error(f"Internal error: {e}", exc_info=True,
                         extra={"request_id": self.request_id, "client_ip": self.client_ip})
            self._error(500, "Internal server error")
        self._finish("POST")

    def log_message(self, format, *args):
        pass  # structured logging instead

    # ── POST handlers ───────────────────────────────────────────────────────

    def _run_now(self, service: str, body: dict):
        tier, params = self.app.plan(service, body)
        if not self._charge(service, tier):
            return
        job = self.app.jobs.create(service, tier, params, body.get("identifier_from_purchaser"),
                                   status=JobStatus.RUNNING)
        try:
            result = self.app.execute(service, params)
        except (ValueError, SearchError, FetchError) as e:
            self.app.jobs.fail(job.job_id, str(e))
            raise
        job = self.app.jobs.complete(job.job_id, result)
        self._json_response(200, {
            "status": "success",
            "job_id": job.job_id,
            **result,
            "output_hash": job.output_hash,
            "signer_id": job.signer_id,
            "signature": job.signature,
            "request_id": self.request_id,
        })

    def _hitl(self, body: dict):
        tier, params = self.app.plan("hitl-verification", body)
        if not self._charge("hitl-verification", tier):
            return
        job = self.app.jobs.create("hitl-verification", tier, params,
                                   body.get("identifier_from_purchaser"),
                                   status=JobStatus.AWAITING_INPUT)
        logger.info("hitl job queued", extra={"extra_data": {"job_id": job.job_id, "urgency": params["urgency"]}})
        self._json_response(200, {
            "status": "pending",
            "jobId": job.job_id,
            "job_id": job.job_id,
            "task": params["task"],
            "message": "Request submitted for human review. Check back for status.",
            "estimatedTime": "1-4 hours" if params["urgency"] == "urgent" else "4-24 hours",
            "request_id": self.request_id,
        })

    def _start_job(self, body: dict):
        """
        Without payment the job is recorded as awaiting_payment and the 402
        answer carries its job_id; repeating the call with {"job_id": ...}
        and an X-PAYMENT header starts it.
        """
        job = None
        if body.get("job_id"):
            job = self.app.jobs.get(body["job_id"])
            if job is None:
                self._error(404, f"Job {body['job_id']} not found")
                return
            if job.status != JobStatus.AWAITING_PAYMENT:
                raise ValueError(f"Job {job.job_id} is {job.status.value}, not awaiting payment")
            service, tier = job.service, job.tier
        else:
            service = body.get("service", "web-research")
            if service not in SERVICES:
                raise ValueError(f"Unknown service: {service}")
            tier, params = self.app.plan(service, normalize_input_data(body.get("input_data")))

        amount = price_for(service, tier)
        payment = self.app.gate.check(self.headers.get("X-PAYMENT"), service, amount)
        if not payment.paid:
            answer = {**(payment.body or {}), "request_id": self.request_id}
            if payment.status == 402:
                if job is None:
                    job = self.app.jobs.create(service, tier, params,
                                               body.get("identifier_from_purchaser"))
                answer["job_id"] = job.job_id
                answer["input_hash"] = job.input_hash
            self._json_response(payment.status, answer)
            return

        next_status = JobStatus.AWAITING_INPUT if service == "hitl-verification" else JobStatus.RUNNING
        if job is None:
            job = self.app.jobs.create(service, tier, params, body.get("identifier_from_purchaser"),
                                       status=next_status)
        else:
            job = self.app.jobs.mark_paid(job.job_id, next_status)
        if next_status == JobStatus.RUNNING:
            self.app.run_job_async(job.job_id)
        self._json_response(200, {
            "status": "success",
            "job_id": job.job_id,
            "service": service,
            "tier": tier,
            "input_hash": job.input_hash,
            "identifier_from_purchaser": job.identifier_from_purchaser,
            "request_id": self.request_id,
        })

    def _provide_input(self, body: dict):
        if not self._is_operator():
            return
        job_id = body.get("job_id")
        if not job_id:
            raise ValueError("job_id is required")
        try:
            job = self.app.jobs.provide_input(job_id, normalize_input_data(body.get("input_data")))
        except KeyError:
            self._error(404, f"Job {job_id} not found")
            return
        self._json_response(200, {"status": "success", **job.status_view()})

    # ── GET helpers ─────────────────────────────────────────────────────────

    def _describe(self) -> dict:
        c = self.app.config
        return {
            "name": "Nox Agent Service",
            "description": "AI Agent offering paid services via x402 multi-chain payments",
            "version": __version__,
            "agent_id": self.app.identity.agent_id,
            "wallets": {"evm": c.evm_wallet, "cardano": c.cardano_wallet},
            "services": SERVICES,
            "pricing": PRICING,
            "endpoints": {
                "GET /health": "Health check (free)",
                "GET /availability": "Service availability (free)",
                "GET /input_schema": "MIP-003 input schema (free)",
                "GET /status?job_id=": "MIP-003 job status (free)",
                "POST /research": "Web research (paid - $5-10)",
                "POST /hitl": "Human verification (paid - $20-50)",
                "POST /scrape": "Web scraping (paid - $3-8)",
                "POST /start_job": "MIP-003 job start (paid per service)",
            },
            "payment": {
                "methods": ["x402 (USDC on Base)", "Masumi (ADA)", "Direct Cardano"],
                "header": "X-PAYMENT",
                "facilitator": c.facilitator_url,
                "testnet_mode": c.testnet_mode,
            },
            "limits": {
                "requests_per_window": c.rate_max,
                "window_seconds": c.rate_window_s,
                "max_body_bytes": c.max_body_bytes,
            },
        }

    def _metrics(self):
        stats = self.app.jobs.stats()
        lines = [
            "# HELP noxagent_requests_total Total requests served",
            "# TYPE noxagent_requests_total counter",
            f"noxagent_requests_total {self.app.requests_served}",
            "# HELP noxagent_rate_limited_total Requests rejected by the rate limiter",
            "# TYPE noxagent_rate_limited_total counter",
            f"noxagent_rate_limited_total {self.app.requests_rate_limited}",
            "# HELP noxagent_rate_limit_clients Client windows currently tracked",
            "# TYPE noxagent_rate_limit_clients gauge",
            f"noxagent_rate_limit_clients {len(self.app.limiter)}",
            "# HELP noxagent_jobs Jobs by status",
            "# TYPE noxagent_jobs gauge",
        ]
        for status in JobStatus:
            lines.append(f'noxagent_jobs{{status="{status.value}"}} {stats["by_status"].get(status.value, 0)}')
        body = ("\n".join(lines) + "\n").encode()
        self.send_response(200)
        self.send_header("Content-Type", "text/plain; version=0.0.4")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("X-Request-Id", self.request_id)
        self.end_headers()
        self.wfile.write(body)


def input_schema() -> dict:
    return {
        "input_data": [
            {"id": "service", "type": "option", "name": "Service",
             "data": {"values": list(SERVICES)}},
            {"id": "query", "type": "string", "name": "Research query",
             "data": {"description": "web-research: what to research"}},
            {"id": "depth", "type": "option", "name": "Research depth",
             "data": {"values": list(DEPTHS)}},
            {"id": "urls", "type": "string[]", "name": "URLs to scrape",
             "data": {"description": "web-scraping: 1-5 public http(s) URLs"}},
            {"id": "selector", "type": "string", "name": "Text to locate",
             "data": {"description": "web-scraping: optional excerpt anchor"}},
            {"id": "task", "type": "string", "name": "Review task",
             "data": {"description": "hitl-verification: what the human should check"}},
            {"id": "complexity", "type": "option", "name": "Review complexity",
             "data": {"values": list(HITL_COMPLEXITY)}},
        ]
    }


def make_handler(app: AgentApp) -> type:
    """Handler class bound to one AgentApp."""
    return type("BoundNoxAgentHandler", (NoxAgentHandler,), {"app": app})


def make_server(app: AgentApp, host: Optional[str] = None, port: Optional[int] = None) -> ThreadingHTTPServer:
    server = ThreadingHTTPServer(
        (host if host is not None else app.config.host, port if port is not None else app.config.port),
        make_handler(app),
    )
    server.daemon_threads = True
    return server


# ── Server with Graceful Shutdown ───────────────────────────────────────────

class GracefulServer:
    def __init__(self, config: ServerConfig):
        self.config = config
        self.shutdown_event = threading.Event()
        self.server: Optional[ThreadingHTTPServer] = None
        self.app: Optional[AgentApp] = None

    def start(self):
        configure_logging(self.config.log_level)
        self.app = AgentApp(self.config)
        self.server = make_server(self.app)

        def _shutdown(signum, frame):
            logger.info(f"Received signal {signum}, shutting down gracefully...")
            self.shutdown_event.set()
            threading.Thread(target=self.server.shutdown, daemon=True).start()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)

        self.app.limiter.start()
        logger.info(f"Nox Agent v{__version__} listening on {self.config.host}:{self.config.port}")
        logger.info(f"Agent identity: {self.app.identity.agent_id[:24]}...")
        if self.config.testnet_mode:
            logger.warning("TESTNET MODE: any X-PAYMENT header is accepted without verification")
        if not self.app.search:
            logger.warning("No search API key configured; /research will answer 503")
        if not self.config.operator_key:
            logger.info("Operator endpoints disabled (set NOX_OPERATOR_KEY to enable)")

        try:
            self.server.serve_forever()
        finally:
            self.app.limiter.stop()
            self.server.server_close()
            logger.info("Server stopped.")
