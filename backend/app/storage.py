from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import uuid
from typing import Protocol

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

from .db import Settings

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "image/jpeg"


class PhotoUnavailable(Exception):
    """Raised when the bytes behind a photo reference cannot be read."""


class PhotoStore(Protocol):
    async def save(
        self,
        room_code: str,
        player_id: str,
        filename: str,
        content: bytes,
        content_type: str | None,
    ) -> str: ...

    async def read(self, ref: str) -> bytes: ...

    async def delete(self, ref: str) -> None: ...


def guess_mime_type(ref: str) -> str:
    return mimetypes.guess_type(ref)[0] or DEFAULT_MIME_TYPE


def _photo_name(room_code: str, player_id: str, filename: str, content_type: str | None) -> str:
    guessed_type = content_type or mimetypes.guess_type(filename)[0]
    extension = os.path.splitext(filename)[1]
    if not extension and guessed_type:
        extension = mimetypes.guess_extension(guessed_type) or ""
    return f"{room_code}/{player_id}-{uuid.uuid4().hex}{extension}"


class LocalPhotoStore:
    def __init__(self, directory: str):
        self.directory = directory

    async def save(self, room_code, player_id, filename, content, content_type) -> str:
        if not content:
            raise ValueError("Uploaded file was empty")

        name = _photo_name(room_code, player_id, filename, content_type)
        path = os.path.join(self.directory, name)
        await asyncio.to_thread(_write_file, path, content)
        return path

    async def read(self, ref: str) -> bytes:
        try:
            return await asyncio.to_thread(_read_file, ref)
        except OSError as exc:
            raise PhotoUnavailable(ref) from exc

    async def delete(self, ref: str) -> None:
        try:
            await asyncio.to_thread(os.remove, ref)
        except FileNotFoundError:
            pass


def _write_file(path: str, content: bytes) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as fh:
        fh.write(content)


def _read_file(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


class BlobPhotoStore:
    """Photos kept in an Azure Blob Storage container; refs are blob names."""

    def __init__(self, service: BlobServiceClient, container_name: str):
        self.service = service
        self.container_name = container_name
        self._container_initialised = False

    async def _container(self):
        container_client = self.service.get_container_client(self.container_name)
        if not self._container_initialised:
            try:
                await asyncio.to_thread(container_client.create_container)
            except ResourceExistsError:
                pass
            self._container_initialised = True
        return container_client

    async def save(self, room_code, player_id, filename, content, content_type) -> str:
        if not content:
            raise ValueError("Uploaded file was empty")

        container_client = await self._container()
        blob_name = _photo_name(room_code, player_id, filename, content_type)
        blob_client = container_client.get_blob_client(blob_name)

        settings_kwargs = {}
        guessed_type = content_type or mimetypes.guess_type(filename)[0]
        if guessed_type:
            settings_kwargs["content_settings"] = ContentSettings(content_type=guessed_type)

        await asyncio.to_thread(blob_client.upload_blob, content, overwrite=True, **settings_kwargs)
        return blob_name

    async def read(self, ref: str) -> bytes:
        blob_client = self.service.get_container_client(self.container_name).get_blob_client(ref)
        try:
            downloader = await asyncio.to_thread(blob_client.download_blob)
            return await asyncio.to_thread(downloader.readall)
        except AzureError as exc:
            raise PhotoUnavailable(ref) from exc

    async def delete(self, ref: str) -> None:
        blob_client = self.service.get_container_client(self.container_name).get_blob_client(ref)
        try:
            await asyncio.to_thread(blob_client.delete_blob)
        except ResourceNotFoundError:
            pass


def build_photo_store(settings: Settings) -> PhotoStore:
    if settings.AZURE_STORAGE_CONNECTION_STRING:
        logger.info("Storing photos in blob container %s", settings.AZURE_STORAGE_CONTAINER)
        service = BlobServiceClient.from_connection_string(settings.AZURE_STORAGE_CONNECTION_STRING)
        return BlobPhotoStore(service, settings.AZURE_STORAGE_CONTAINER)
    return LocalPhotoStore(settings.PHOTO_DIR)
