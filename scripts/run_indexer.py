#!/usr/bin/env python3
"""
Entry point script for the real-time vault indexer.
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from vault_indexer.core.indexer import main

if __name__ == "__main__":
    sys.exit(main())
