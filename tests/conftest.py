from __future__ import annotations

from pathlib import Path
import sys

# Run against the working tree even when the package is not installed.
_SRC = Path(__file__).resolve().parents[1] / 'src'
if _SRC.is_dir() and str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))
