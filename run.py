#!/usr/bin/env python3
"""Development runner: python run.py backup user@host --preview"""
import sys
from backupsh.cli import main

if __name__ == '__main__':
    # Same entry point as the installed `backupsh` script
    sys.exit(main())
