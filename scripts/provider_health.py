from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # Probe the account provider through the circuit breaker.
    raise SystemExit(main(["provider-health"]))
