"""Allow ``python -m natfwd``."""

from natfwd.cli.main import main

if __name__ == "__main__":
    main()
