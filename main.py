#!/usr/bin/env python3
"""
persistguard entry point
"""
from persistguard.cli import cli

if __name__ == '__main__':
    cli()
