import sys
from pathlib import Path


# myousync.py and its packages live at the repository root.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
