#!/usr/bin/env python3
"""histostack stage runner.

Usage:
    python scripts/run_histostack.py --config scripts/user_config.py init -M slices.txt /data/brain01
    python scripts/run_histostack.py recon -z 2.0 0.1 /data/brain01
    python scripts/run_histostack.py -N voliter /data/brain01

Note: User config in scripts/user_config.py, expert config in src/histostack/schemas/param.py
"""

import sys
from pathlib import Path

# Add src to path
project_root = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(project_root / "src"))

from histostack.cli.main import main


if __name__ == "__main__":
    sys.exit(main())
