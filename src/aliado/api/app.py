"""ASGI entrypoint: uvicorn aliado.api.app:app"""

from aliado.api.factory import create_app

app = create_app()
