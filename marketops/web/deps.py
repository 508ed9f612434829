# marketops/web/deps.py
from fastapi import Request

from marketops.services import Services


async def get_app_services(request: Request) -> Services:
    return request.app.state.services
