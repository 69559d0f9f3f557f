import sys
from pathlib import Path

# Make the `chronicle_keeper` package importable when the tests run from a checkout
root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))
