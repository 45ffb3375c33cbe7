"""Entry point for running company-sync via python -m company_sync"""

import sys

# Enforce runtime requirement early to avoid import-time errors on 3.9
if sys.version_info < (3, 10):
    print(
        f"company-sync requires Python 3.10+; found {sys.version.split()[0]}",
        file=sys.stderr,
    )
    sys.exit(1)

from .cli import main

if __name__ == "__main__":
    main()
