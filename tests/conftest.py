import sys
from pathlib import Path

import pytest

# Make the `palate` namespace package importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from palate.core.store import VisitStore  # noqa: E402


@pytest.fixture
def store(tmp_path):
    s = VisitStore(str(tmp_path / "palate.db"))
    yield s
    s.close()
