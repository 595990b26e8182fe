import sys
from pathlib import Path


# Ensure gocd-api is on sys.path for tests that import modules directly.
GOCD_API_DIR = Path(__file__).resolve().parents[1]
if str(GOCD_API_DIR) not in sys.path:
    sys.path.insert(0, str(GOCD_API_DIR))
