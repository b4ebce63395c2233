"""Module entrypoint for the dashboard TUI.

Run:
  python -m botdash
"""

from __future__ import annotations

from .main import main


if __name__ == "__main__":
    main()
