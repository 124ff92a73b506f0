"""
Object storage abstraction.

Paths are relative to the bucket the implementation is bound to. 'put' raises
'StoragePermissionError' when the storage refuses the request, 'NetworkError'
when the bytes could not be transferred and 'StorageError' for any other
failure to persist them.

Concrete implementations: 'InMemoryObjectStorage', 'SupabaseStorage'.
"""

from abc import ABC, abstractmethod


class ObjectStorage(ABC):
    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str, upsert: bool = True) -> str:
        """Store 'data' at 'path' and return the path."""
        pass

    @abstractmethod
    async def get_public_url(self, path: str) -> str:
        pass

    @abstractmethod
    async def delete(self, path: str) -> bool:
        """Remove the object. Returns False if nothing was stored at 'path'."""
        pass
