"""Upload pipeline: validation, retry, transfer and session orchestration."""

from capture_upload.pipeline.manager import UploadSessionManager
from capture_upload.pipeline.progress import ProgressEstimator
from capture_upload.pipeline.retry import RetryController
from capture_upload.pipeline.session import UploadCallbacks
from capture_upload.pipeline.transfer import TransferEngine, plan_parts
from capture_upload.pipeline.validator import UploadPolicy, validate_request

__all__ = [
    "UploadSessionManager",
    "UploadCallbacks",
    "UploadPolicy",
    "validate_request",
    "RetryController",
    "ProgressEstimator",
    "TransferEngine",
    "plan_parts",
]
