# Ensure 'backend/' is on sys.path so 'import poi_discovery' works
# even when the package is not installed.
from pathlib import Path
import sys

_BACKEND_DIR = Path(__file__).resolve().parent
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))
