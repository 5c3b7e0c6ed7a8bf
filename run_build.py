from __future__ import annotations

from buildgov.cli import main

if __name__ == "__main__":
    main()
