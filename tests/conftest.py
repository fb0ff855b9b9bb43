from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# Ensure the top-level modules and the tests package are importable in pytest.
sys.path.insert(0, str(PROJECT_ROOT))
