from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # Deliver deferred notifications whose quiet window has ended.
    raise SystemExit(main(["drain"]))
