from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # One-off expiration reconciliation pass, e.g. from cron or after an incident.
    raise SystemExit(main(["reconcile"]))
