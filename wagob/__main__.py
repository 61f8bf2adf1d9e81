"""Allow ``python -m wagob``."""

from wagob.cli import main

if __name__ == "__main__":
    main()
