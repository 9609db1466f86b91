#!/usr/bin/env python3
"""
Manage the local Open WebUI / SearXNG / Ollama stack from a checkout.

Same as the installed ``stackctl`` command. Run `python tools/stackctl.py --help`
for usage details.
"""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from localai_stack.cli import main  # noqa: E402


if __name__ == "__main__":
    sys.exit(main())
