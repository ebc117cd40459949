# SPDX-License-Identifier: MIT
"""Pytest bootstrap.

* Ensure the repository root is importable so tests resolve the in-tree
  package without installing it.
* Strip ``DEADLOCK_RETRY_*`` variables inherited from the developer shell so
  settings-based tests see the documented defaults.
"""

from __future__ import annotations

import os
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

for _env_key in [key for key in os.environ if key.startswith("DEADLOCK_RETRY_")]:
    os.environ.pop(_env_key, None)
