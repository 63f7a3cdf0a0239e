"""Run the FoodSnap API with uvicorn: ``python -m foodsnap``."""

from __future__ import annotations

import uvicorn

from foodsnap.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run("foodsnap.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
