from __future__ import annotations

from subgov.apps.worker import main


if __name__ == "__main__":
    # Push locally disabled subscriptions to the provider once it is healthy.
    raise SystemExit(main(["sync"]))
