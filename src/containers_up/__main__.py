"""Entry point for ``python -m containers_up``."""

from containers_up.main import main

if __name__ == "__main__":
    main()
