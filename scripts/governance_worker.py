from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # Run every periodic governance task in one long-lived process.
    raise SystemExit(main(["run"]))
