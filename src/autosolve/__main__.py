from __future__ import annotations

from autosolve.cli import main


if __name__ == "__main__":
    main()
