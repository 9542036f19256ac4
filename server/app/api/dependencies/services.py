from fastapi import Request

from app.integrations.delivery import DeliveryClient
from app.integrations.esignature import ProviderRegistry
from app.integrations.rendering import RenderingClient
from app.services.locks import KeyedLockRegistry


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.providers


def get_lock_registry(request: Request) -> KeyedLockRegistry:
    return request.app.state.locks


def get_renderer(request: Request) -> RenderingClient | None:
    return getattr(request.app.state, "renderer", None)


def get_delivery_client(request: Request) -> DeliveryClient | None:
    return getattr(request.app.state, "delivery", None)
