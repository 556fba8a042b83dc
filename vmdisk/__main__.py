"""Module entry point: ``python -m vmdisk``."""

from vmdisk.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
