"""
Entry point: python -m fleet_trader.main
"""
import uvicorn

from .config import get_settings


def main():
    settings = get_settings()
    uvicorn.run(
        "fleet_trader.api:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
