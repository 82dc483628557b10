"""Artifact upload and remote launch for the deploy target."""

from .exceptions import DeployError, InvalidArtifactError, RemoteLaunchError, TransferError
from .uploader import DEFAULT_LOG_FILE, ArtifactUploader, UploadJob, UploadResult

__all__ = [
    "DEFAULT_LOG_FILE",
    "ArtifactUploader",
    # Exceptions
    "DeployError",
    "InvalidArtifactError",
    "RemoteLaunchError",
    "TransferError",
    # Data
    "UploadJob",
    "UploadResult",
]
