"""Entry point for ``python -m stackpilot``."""

from stackpilot.cli.main import main


if __name__ == "__main__":
    main()
