"""FastAPI dependencies resolving the clients built in the application lifespan"""
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from paysync.core.config import Settings
from paysync.services.paystack_client import PaystackClient
from paysync.services.play_client import GooglePlayClient


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session_factory(request: Request) -> sessionmaker:
    return request.app.state.session_factory


def get_gateway(request: Request) -> Optional[PaystackClient]:
    return request.app.state.gateway


def get_billing(request: Request) -> Optional[GooglePlayClient]:
    return request.app.state.billing


def get_redis(request: Request):
    return request.app.state.redis
