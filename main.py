#!/usr/bin/env python3

from bridge_relayer.cli import run

if __name__ == "__main__":
    run()
