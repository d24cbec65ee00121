from fastapi import Request

from .config import Settings
from .messaging import EventPublisher


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_gateway(request: Request):
    return request.app.state.gateway


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher
