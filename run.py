#!/usr/bin/env python3
"""Development runner (python run.py <command> ...)"""
import os

# Use development config (data/ inside the checkout) unless told otherwise
os.environ.setdefault('DVOM_ENV', 'development')

from dvom.cli import main  # noqa: E402

if __name__ == '__main__':
    main()
