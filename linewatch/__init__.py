"""
Production line change watcher.

Polls the shared production spreadsheets, detects per entity changes and
pushes them to the TV displays. Entry point is linewatch/main.py
"""
import sys

__version__ = '0.4.0'

try:
    assert sys.version_info[0:2] >= (3, 8)
except AssertionError:
    print('This entire program must be run with python >= 3.8')
    print('If unavailable on platform, see https://github.com/pyenv/pyenv')
    sys.exit(1)
