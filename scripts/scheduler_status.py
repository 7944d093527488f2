from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # Print scheduled tasks with their durable last-run rows.
    raise SystemExit(main(["status"]))
