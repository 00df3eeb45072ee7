#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Smart RFP Studio startup script.

Checks the things that otherwise only fail at upload time:
  1. args/llm_config.yaml routing (empty chains, unknown models/providers,
     missing API keys)
  2. the database schema
  3. the requested port (walks forward to the first free one)

Usage:
  python start.py                   # validate + start Flask
  python start.py --port 5002       # preferred port
  python start.py --validate-only   # check without starting Flask
  python start.py --probe-models    # also ask providers for each routed model
"""

import argparse
import os
import socket
import subprocess
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path

from dotenv import dotenv_values

# Windows cp1252 consoles cannot print the status glyphs; force UTF-8
if hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding="utf-8", errors="replace")
if hasattr(sys.stderr, "reconfigure"):
    sys.stderr.reconfigure(encoding="utf-8", errors="replace")

BASE_DIR = Path(__file__).resolve().parent
ENV_FILE = BASE_DIR / ".env"
APP_MODULE = "rfpstudio.dashboard.app"

ROUTED_FUNCTIONS = ("rfp_analysis", "organization_analysis")
PORT_ATTEMPTS = 10

GREEN = "\033[32m"
RED   = "\033[31m"
YELLOW = "\033[33m"
CYAN  = "\033[36m"
RESET = "\033[0m"
BOLD  = "\033[1m"


def _ok(msg):   print(f"{GREEN}  ✓{RESET} {msg}")
def _warn(msg): print(f"{YELLOW}  ⚠{RESET} {msg}")
def _err(msg):  print(f"{RED}  ✗{RESET} {msg}")
def _info(msg): print(f"{CYAN}  →{RESET} {msg}")


# ── Port selection ─────────────────────────────────────────────────────────────

def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(start_port: int, attempts: int = PORT_ATTEMPTS,
                        host: str = "127.0.0.1") -> int:
    """First free port in [start_port, start_port + attempts)."""
    for port in range(start_port, start_port + attempts):
        if port_is_free(port, host):
            return port
    raise RuntimeError(
        f"No available port found between {start_port} and {start_port + attempts - 1}"
    )


# ── LLM routing validation ─────────────────────────────────────────────────────

def validate_routing(router) -> list:
    """Problems with every routed function, as (function, issue) tuples."""
    issues = []
    for function in ROUTED_FUNCTIONS:
        for issue in router.validate(function):
            issues.append((function, issue))
    return issues


def probe_models(router) -> list:
    """Model names in any routed chain that their provider reports as unavailable."""
    unavailable = []
    for function in ROUTED_FUNCTIONS:
        for model_name in router.chain_for(function):
            if model_name not in unavailable and not router.check_availability(model_name):
                unavailable.append(model_name)
    return unavailable


# ── Flask startup ──────────────────────────────────────────────────────────────

def wait_for_flask(port: int, timeout: float = 15.0) -> bool:
    """Poll /api/health until Flask responds. Returns True on success."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            with urllib.request.urlopen(
                f"http://127.0.0.1:{port}/api/health", timeout=2
            ) as resp:
                if resp.status < 500:
                    return True
        except urllib.error.HTTPError as e:
            if e.code < 500:
                return True
        except (urllib.error.URLError, OSError):
            pass
        time.sleep(0.5)
    return False


def start_flask(port: int, host: str) -> subprocess.Popen:
    """Launch the API in a subprocess. Returns the Popen object."""
    env = os.environ.copy()
    if ENV_FILE.exists():
        for key, value in dotenv_values(ENV_FILE).items():
            if value is not None:
                env.setdefault(key, value)

    return subprocess.Popen(
        [sys.executable, "-m", APP_MODULE, "--port", str(port), "--host", host],
        cwd=str(BASE_DIR),
        env=env,
    )


# ── Main ───────────────────────────────────────────────────────────────────────

def run(args):
    print(f"\n{BOLD}RFP Studio Smart Startup{RESET}\n")

    # ── Step 1: model routing ─────────────────────────────────────────────────
    print(f"{BOLD}[1/3] LLM routing validation{RESET}")
    from rfpstudio.llm.router import LLMRouter
    router = LLMRouter(config_path=args.llm_config) if args.llm_config else LLMRouter()
    issues = validate_routing(router)
    if not issues:
        for function in ROUTED_FUNCTIONS:
            _ok(f"{function}: {' → '.join(router.chain_for(function))}")
    else:
        for function, issue in issues:
            _warn(f"{function}: {issue}")
        if args.strict:
            _err("Routing problems found (--strict)")
            return 1
    if args.probe_models:
        unavailable = probe_models(router)
        for model_name in unavailable:
            _warn(f"{model_name}: provider reports the model as unavailable")
        if not unavailable:
            _ok("All routed models reachable")

    # ── Step 2: database ──────────────────────────────────────────────────────
    print(f"\n{BOLD}[2/3] Database{RESET}")
    from rfpstudio.db.init_db import init_db
    result = init_db()
    _ok(f"{result['db_path']} ({result['tables']} tables)")

    if args.validate_only:
        print(f"\n{BOLD}Validation complete.{RESET} (--validate-only, not starting Flask)\n")
        return 0 if not issues else 1

    # ── Step 3: port + Flask ──────────────────────────────────────────────────
    print(f"\n{BOLD}[3/3] Starting Flask{RESET}")
    try:
        port = find_available_port(args.port, host=args.host)
    except RuntimeError as e:
        _err(str(e))
        return 1
    if port != args.port:
        _warn(f"Port {args.port} in use, using {port}")

    proc = start_flask(port, args.host)
    _info(f"Flask PID {proc.pid} started, waiting for readiness...")

    if wait_for_flask(port, timeout=20.0):
        _ok(f"RFP Studio is ready → http://{args.host}:{port}")
        print()
    else:
        _warn("Flask didn't respond within 20s; it may still be starting")

    print(f"  Press {BOLD}Ctrl+C{RESET} to stop.\n")

    try:
        proc.wait()
    except KeyboardInterrupt:
        _info("Shutting down Flask...")
        proc.terminate()
        proc.wait(timeout=5)
        _ok("Stopped")

    return 0


def main():
    parser = argparse.ArgumentParser(description="Smart RFP Studio startup")
    parser.add_argument("--port", type=int, default=int(os.environ.get("FLASK_PORT", 5001)))
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--llm-config", help="Override args/llm_config.yaml")
    parser.add_argument("--validate-only", action="store_true",
                        help="Validate routing and database, then exit")
    parser.add_argument("--strict", action="store_true",
                        help="Refuse to start when routing problems are found")
    parser.add_argument("--probe-models", action="store_true",
                        help="Ask each provider whether the routed models are available")
    args = parser.parse_args()
    sys.exit(run(args))


if __name__ == "__main__":
    main()
