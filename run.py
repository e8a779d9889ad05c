#!/usr/bin/env python3
"""Backup runner (for cron or a systemd timer)"""
import sys
from pgbackup.cli import main

if __name__ == '__main__':
    sys.exit(main())
