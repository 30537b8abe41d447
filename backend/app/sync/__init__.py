"""Sync protocol services: detection, upload, download and resolution."""

from .detector import Detection, SyncAction, detect, find_current
from .download import DownloadResult, download
from .resolver import RESOLUTIONS, USE_CLIENT, USE_SERVER, resolve
from .upload import ConflictEntry, ProcessedEntry, UploadResult, upload

__all__ = [
    "ConflictEntry",
    "Detection",
    "DownloadResult",
    "ProcessedEntry",
    "RESOLUTIONS",
    "SyncAction",
    "USE_CLIENT",
    "USE_SERVER",
    "UploadResult",
    "detect",
    "download",
    "find_current",
    "resolve",
    "upload",
]
