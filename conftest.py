"""Root conftest.py -- ensures `dunning_notifier` is importable from tests."""

import sys
from pathlib import Path

# Add the project root to sys.path so `from dunning_notifier.models import ...` works
# without installing the package.
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
