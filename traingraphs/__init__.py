"""Per-utterance training graph compilation for HMM acoustic models"""

import os

with open(
    os.path.join(os.path.dirname(__file__), "version.txt"), encoding="utf-8"
) as f:
    version = f.read().strip()

__version__ = version
