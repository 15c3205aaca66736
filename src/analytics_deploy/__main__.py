"""Entry point for ``python -m analytics_deploy``."""

from analytics_deploy.cli import run

if __name__ == "__main__":
    run()
