"""Network clients for the conductor's RPC interfaces."""

from backdrop.clients.admin_client import AdminClient, AppInfo, CellInfo, EnabledApp

__all__ = [
    "AdminClient",
    "AppInfo",
    "CellInfo",
    "EnabledApp",
]
