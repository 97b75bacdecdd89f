"""FastAPI dependency-injection helpers for the job registry and mail clients."""

from __future__ import annotations

from fastapi import Request

from .config import ServiceConfig
from .jobs import JobRegistry
from .pipeline import ClientFactory
from .storage import WorkingStore


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


def get_store(request: Request) -> WorkingStore:
    return request.app.state.store


def get_client_factory(request: Request) -> ClientFactory:
    return request.app.state.client_factory


def get_settings(request: Request) -> ServiceConfig:
    return request.app.state.settings
