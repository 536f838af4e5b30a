"""核心业务逻辑."""

from magnetsync.core.credentials import CredentialError, Pan123Credentials, TokenCache
from magnetsync.core.download import DownloadManager, InvalidTransition
from magnetsync.core.pan123 import Pan123Client, Pan123Error
from magnetsync.core.reconciler import Reconciler, SweepInProgress
from magnetsync.core.retry import BulkRetryCoordinator

__all__ = [
    "BulkRetryCoordinator",
    "CredentialError",
    "DownloadManager",
    "InvalidTransition",
    "Pan123Client",
    "Pan123Credentials",
    "Pan123Error",
    "Reconciler",
    "SweepInProgress",
    "TokenCache",
]
