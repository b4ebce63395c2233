"""UI package (positions dashboard)."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .app import DashboardApp as DashboardApp

__all__ = ["DashboardApp"]


def __getattr__(name: str):
    if name == "DashboardApp":
        from .app import DashboardApp

        return DashboardApp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
