#!/usr/bin/env python3
"""Run edgehost local directly (dev mode)."""
import sys
from pathlib import Path

# Add parent to path
sys.path.insert(0, str(Path(__file__).parent))

from edgehost_local.cli import main

if __name__ == "__main__":
    print("Starting edgehost local server...")
    print("Press Ctrl+C to stop")
    sys.exit(main())
