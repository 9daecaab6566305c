"""
Nox Agent CLI.

Usage:
    noxagent serve --port 3000 --testnet
    noxagent check-url "http://169.254.169.254/latest/meta-data"
    noxagent wallet
    noxagent health --server http://localhost:3000
    noxagent version
"""

import argparse
import json
import sys
import urllib.error
import urllib.request


DEFAULT_SERVER = "http://localhost:3000"


class NoxAgentError(Exception):
    """HTTP error from a Nox Agent server."""
    def __init__(self, status: int, detail: str):
        self.status = status
        self.detail = detail
        super().__init__(f"HTTP {status}: {detail}")


def _get_json(url: str, timeout: float = 5) -> dict:
    try:
        with urllib.request.urlopen(url, timeout=timeout) as resp:
            return json.loads(resp.read())
    except urllib.error.HTTPError as e:
        detail = e.read().decode(errors="replace") if e.fp else str(e)
        try:
            detail = json.loads(detail).get("error", detail)
        except (json.JSONDecodeError, AttributeError):
            pass
        raise NoxAgentError(e.code, detail) from e


def cmd_serve(args):
    """Run the HTTP service."""
    from noxagent.server import GracefulServer, ServerConfig

    config = ServerConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.testnet:
        config.testnet_mode = True
    if args.keyfile:
        config.keyfile = args.keyfile
    if args.rate_max is not None:
        config.rate_max = args.rate_max
    if args.rate_window is not None:
        config.rate_window_s = args.rate_window
    if args.max_body is not None:
        config.max_body_bytes = args.max_body
    GracefulServer(config).start()


def cmd_check_url(args):
    """Classify a URL against the default fetch policy."""
    from noxagent.url_guard import check_safe

    outcome = check_safe(args.url)
    if outcome.safe:
        print(f"✓ safe: {args.url}")
        sys.exit(0)
    print(f"✗ unsafe ({outcome.reason}): {args.url}")
    sys.exit(1)


def cmd_wallet(args):
    """Generate a new EVM wallet for receiving payments."""
    from noxagent.wallet import create_wallet

    w = create_wallet(args.words)
    print("=== NEW EVM WALLET ===")
    print(f"Address:     {w.address}")
    print(f"Private Key: {w.private_key}")
    print(f"Mnemonic:    {w.mnemonic}")
    print(f"Path:        {w.derivation_path}")
    print()
    print("SAVE THESE SECURELY - NEVER SHARE THE PRIVATE KEY")
    print(f"Then: export NOX_EVM_WALLET={w.address}")


def cmd_health(args):
    """Check server health."""
    url = (args.server or DEFAULT_SERVER).rstrip("/") + "/health"
    try:
        data = _get_json(url)
    except (NoxAgentError, urllib.error.URLError, OSError) as e:
        print(f"✗ Health check failed: {e}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(data, indent=2))
    print(f"\n✓ Server {url} is {data.get('status', 'unknown')} (v{data.get('version', '?')})")


def cmd_version(args):
    from noxagent import __version__
    print(f"noxagent {__version__}")
    print(f"Python {sys.version}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="noxagent",
        description="Nox Agent — paid research, scraping and human review over x402",
    )
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the HTTP service")
    p_serve.add_argument("--host", help="Bind address (default 0.0.0.0 or NOX_HOST)")
    p_serve.add_argument("--port", type=int, help="Port (default 3000 or PORT/NOX_PORT)")
    p_serve.add_argument("--testnet", action="store_true",
                         help="Accept any X-PAYMENT header without facilitator verification")
    p_serve.add_argument("--keyfile", help="Ed25519 PEM key for signing job results")
    p_serve.add_argument("--rate-max", type=int, help="Requests per window per client")
    p_serve.add_argument("--rate-window", type=float, help="Rate limit window in seconds")
    p_serve.add_argument("--max-body", type=int, help="Max request body in bytes")

    p_check = sub.add_parser("check-url", help="Check whether a URL may be fetched")
    p_check.add_argument("url")

    p_wallet = sub.add_parser("wallet", help="Generate a new EVM wallet")
    p_wallet.add_argument("--words", type=int, default=12, choices=[12, 24])

    p_health = sub.add_parser("health", help="Check server health")
    p_health.add_argument("--server", default=DEFAULT_SERVER, help="Nox Agent server URL")

    sub.add_parser("version", help="Print version")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "check-url":
        cmd_check_url(args)
    elif args.command == "wallet":
        cmd_wallet(args)
    elif args.command == "health":
        cmd_health(args)
    elif args.command == "version":
        cmd_version(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
