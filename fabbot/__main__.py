"""Allow ``python -m fabbot`` to launch the device controller."""

from __future__ import annotations

import sys


def main() -> None:
    from fabbot.app.master import run
    raise SystemExit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
