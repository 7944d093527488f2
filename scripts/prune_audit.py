from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # Delete audit events older than the retention window.
    raise SystemExit(main(["prune-audit"]))
