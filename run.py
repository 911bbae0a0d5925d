#!/usr/bin/env python3
"""Development runner"""
from backup_companion.cli import main

if __name__ == '__main__':
    # e.g. python run.py --config config.yaml --log-level debug backup
    main()
