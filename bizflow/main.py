"""ASGI entry point for the bizflow API."""

from bizflow.config import load_config
from bizflow.factory import create_app

config = load_config()
app = create_app(config)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("bizflow.main:app", **config.get_uvicorn_config())
