"""Remote video hosting clients."""

from streamvault.remote.base import RemoteAsset, RemoteStreamClient, SignedPlaybackURL, map_remote_state
from streamvault.remote.cloudflare import CloudflareStreamClient
from streamvault.remote.factory import get_remote_client, reset_remote_client_cache
from streamvault.remote.mock import MockStreamClient

__all__ = [
    "CloudflareStreamClient",
    "MockStreamClient",
    "RemoteAsset",
    "RemoteStreamClient",
    "SignedPlaybackURL",
    "get_remote_client",
    "map_remote_state",
    "reset_remote_client_cache",
]
