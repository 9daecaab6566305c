"""
Nox Agent — paid web research, scraping and human review behind x402.

Quick start:
    from noxagent import RateLimiter, TargetValidator

    limiter = RateLimiter(window_s=60, max_per_window=10)
    if not limiter.admit("203.0.113.7").allowed:
        ...  # 429

    validator = TargetValidator()
    outcome = validator.check_safe("http://169.254.169.254/latest/meta-data")
    print(outcome.safe, outcome.reason)  # False internal address

Run the service:
    noxagent serve --port 3000 --testnet
"""

__version__ = "1.0.0"

from noxagent.rate_limiter import ClientWindow, Decision, RateLimiter
from noxagent.url_guard import AddressPattern, Outcome, TargetValidator, ValidationPolicy, check_safe

__all__ = [
    "AddressPattern",
    "ClientWindow",
    "Decision",
    "Outcome",
    "RateLimiter",
    "TargetValidator",
    "ValidationPolicy",
    "check_safe",
    "__version__",
]
