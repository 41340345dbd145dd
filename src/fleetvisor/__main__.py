"""Allow ``python -m fleetvisor``."""

from fleetvisor.main import run

if __name__ == "__main__":
    run()
