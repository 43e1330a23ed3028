"""Bundle the application build with a NickelMenu release (see ``kobo-bundle --help``)."""

from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from kobo_release.cli import main


if __name__ == "__main__":
    sys.exit(main())
