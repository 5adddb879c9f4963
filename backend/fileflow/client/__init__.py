from fileflow.client.api import ApiError, FilesApiClient
from fileflow.client.cache import CONNECTION_LOST, ClientStateCache
from fileflow.client.observable import Derived, Observable

__all__ = [
    "FilesApiClient", "ApiError",
    "ClientStateCache", "CONNECTION_LOST",
    "Observable", "Derived",
]
