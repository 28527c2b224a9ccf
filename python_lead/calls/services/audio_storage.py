"""
Durable audio storage on top of the Django ``audio`` storage alias.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

from django.core.files.base import ContentFile
from django.core.files.storage import Storage, storages

logger = logging.getLogger(__name__)

UNSAFE_PATH_CHARS = re.compile(r'[^A-Za-z0-9_.-]')


@dataclass
class StoredAudio:
    name: str
    locator: str
    size_bytes: int


def _safe_component(value: str) -> str:
    cleaned = UNSAFE_PATH_CHARS.sub('_', str(value)).lstrip('.')
    if not cleaned:
        raise ValueError(f"cannot build a storage path from {value!r}")
    return cleaned


def audio_path(tenant_id: str, call_id: str) -> str:
    """Tenant-scoped object name for a call recording."""
    return f"{_safe_component(tenant_id)}/calls/{_safe_component(call_id)}.mp3"


class AudioStorage:
    """
    Stores recordings under ``<tenant>/calls/<call_id>.mp3``.

    The locator is ``uri_prefix + name`` when a prefix is configured (e.g.
    ``gs://bucket/``) and the bare object name otherwise.
    """

    def __init__(self, storage: Optional[Storage] = None, uri_prefix: str = ''):
        self.storage = storage if storage is not None else storages['audio']
        self.uri_prefix = uri_prefix

    def save(self, tenant_id: str, call_id: str, content: bytes) -> StoredAudio:
        name = audio_path(tenant_id, call_id)
        # Storage backends rename on collision; the path must stay stable
        if self.storage.exists(name):
            self.storage.delete(name)
        saved_name = self.storage.save(name, ContentFile(content))
        locator = f"{self.uri_prefix}{saved_name}" if self.uri_prefix else saved_name
        logger.info(f"Stored {len(content)} bytes of audio for tenant={tenant_id} call={call_id} at {locator}")
        return StoredAudio(name=saved_name, locator=locator, size_bytes=len(content))

    def is_remote(self, locator: str) -> bool:
        return '://' in locator

    def read(self, locator: str) -> bytes:
        name = locator[len(self.uri_prefix):] if self.uri_prefix and locator.startswith(self.uri_prefix) else locator
        with self.storage.open(name, 'rb') as f:
            return f.read()
