"""Mailbox endpoints: provider presets and folder listing."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends

from mail_harvester.config import ServiceConfig
from mail_harvester.deps import get_client_factory, get_settings
from mail_harvester.pipeline import ClientFactory
from mail_harvester.providers import ProviderPreset, list_providers
from mail_harvester.schemas import FolderList, MailboxCredentials

router = APIRouter(prefix="/api/v1", tags=["mailbox"])


@router.get("/providers", response_model=list[ProviderPreset])
async def get_providers():
    return list_providers()


@router.post("/folders", response_model=FolderList)
async def list_folders(
    body: MailboxCredentials,
    client_factory: Annotated[ClientFactory, Depends(get_client_factory)],
    settings: Annotated[ServiceConfig, Depends(get_settings)],
):
    client = client_factory(body.to_imap_config(), settings.pipeline)
    try:
        await client.connect()
        folders = await client.list_folders()
    finally:
        await client.disconnect()
    return FolderList(folders=folders)
