"""Allow ``python -m dispatch_worker``."""

from .worker import run

if __name__ == "__main__":
    run()
