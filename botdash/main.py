"""Entrypoint for the bot positions dashboard."""
from __future__ import annotations

from .ui import DashboardApp


def main() -> None:
    DashboardApp().run()


if __name__ == "__main__":
    main()
