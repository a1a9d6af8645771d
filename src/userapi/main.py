"""ASGI entry point: ``uvicorn userapi.main:app``."""

import uvicorn

from .api import create_app

app = create_app()


def run() -> None:
    uvicorn.run("userapi.main:app", host="0.0.0.0", port=3000)


if __name__ == "__main__":
    run()
