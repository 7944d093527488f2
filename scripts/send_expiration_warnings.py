from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # Send the day's expiration warnings.
    raise SystemExit(main(["warnings"]))
