#!/usr/bin/env python3
"""Script runner (same as the backup-courier console script)"""
import sys
from backup_courier.cli import main

if __name__ == '__main__':
    sys.exit(main())
