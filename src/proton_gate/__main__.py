"""
Entry point for running proton_gate as a module.

    python -m proton_gate status
"""

import sys

from proton_gate.cli import main

if __name__ == "__main__":
    sys.exit(main())
