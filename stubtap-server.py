#!/usr/bin/env python3
"""
StubTap Stub Server CLI

Run a stub server from a source checkout without installing the package.

Examples:
    # Serve stubs from a mapping file
    python3 stubtap-server.py serve --mappings stubs.yaml

    # Validate a mapping file
    python3 stubtap-server.py validate stubs.yaml
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from stubtap.cli import main


if __name__ == '__main__':
    main()
