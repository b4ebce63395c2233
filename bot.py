#!/usr/bin/env python3
"""Launch the botdash TUI with sane defaults."""
from __future__ import annotations

import os

from botdash.main import main


if __name__ == "__main__":
    os.environ.setdefault("IBKR_CLIENT_ID", "0")
    main()
