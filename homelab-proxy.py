#!/usr/bin/env python3

"""Run homelab-proxy from a source checkout.

Usage: ./homelab-proxy.py <command> [options]

Puts ``src/`` on the import path so the CLI works without ``pip install``.
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from homelab_proxy.cli import main  # noqa: E402

if __name__ == "__main__":
    main()
