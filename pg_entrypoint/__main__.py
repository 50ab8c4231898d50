import sys

from pg_entrypoint.entrypoint import main

if __name__ == "__main__":
    sys.exit(main())
