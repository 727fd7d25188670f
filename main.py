#!/usr/bin/env python3
"""Entry point for the thermalbridge printer bridge."""

import sys

# Ensure environment from .env-like files is loaded before anything else
from thermalbridge.app.config import load_env_from_files

load_env_from_files(override=False)

from thermalbridge.app.main import run

if __name__ == "__main__":
    sys.exit(run())
