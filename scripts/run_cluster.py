#!/usr/bin/env python3
"""
Run a local mixnet test cluster.

Usage:
    python scripts/run_cluster.py --providers 2 --mixes 4
    python scripts/run_cluster.py --voting --authorities 3 --user alice@provider-0
    python scripts/run_cluster.py --generate-only --base-dir /tmp/testnet
"""

import sys

from mixnet_cluster.cli import main


if __name__ == "__main__":
    sys.exit(main())
