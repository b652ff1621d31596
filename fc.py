#!/usr/bin/env python3
"""
fleetcheck CLI entrypoint (fc.py)

Fleet checklists and non-conformities over a Git-native datarepo.

This file delegates to the fleetcheck CLI layer.
"""
from fleetcheck.cli.fc_cli import main

if __name__ == "__main__":
    main()
