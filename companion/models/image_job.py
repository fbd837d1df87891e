"""
companion/models/image_job.py

Snapshot of an in-memory image generation job.
"""

from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict

JobStatus = Literal["SUBMITTED", "RUNNING", "SUCCEEDED", "FAILED"]
TrackerState = Literal["IDLE", "SUBMITTING", "POLLING", "SUCCEEDED", "FAILED"]


class ImageJob(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    conversation_id: str
    status: JobStatus
    provider: str
    result_urls: Optional[List[str]] = None
    created_at: datetime


class ImageJobView(BaseModel):
    """Tracker state as exposed to callers."""
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    state: TrackerState
    job: Optional[ImageJob] = None
    attempts: int = 0
