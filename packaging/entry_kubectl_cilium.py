#!/usr/bin/env python3
"""PyInstaller entrypoint for the kubectl-ciliumctl plugin binary.

Thin wrapper around the project CLI so a frozen, single-file binary can be
shipped as a kubectl plugin.
"""

from ciliumctl.cli import main


if __name__ == "__main__":
    main()
