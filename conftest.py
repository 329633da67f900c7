import sys
from pathlib import Path

# Let the tests import gitsigs from src/ without installing it first
project_root = Path(__file__).parent
src_path = str(project_root / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)
