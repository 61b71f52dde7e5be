import os
import sys
from pathlib import Path

# Make the 'smolbot' package importable when tests run from a checkout without installing
root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))
os.environ.setdefault("PYTHONPATH", str(root))
