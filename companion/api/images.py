"""
Image job API.

- POST   /api/images/jobs: start an image job in a conversation
- GET    /api/images/jobs/{session_id}: tracker state
- DELETE /api/images/jobs/{session_id}: cancel the job
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, Field

from companion.core.auth import get_identity
from companion.features.images.service import cancel_image_job, get_image_job, request_image
from companion.models.image_job import ImageJobView

router = APIRouter(prefix="/images", tags=["images"])


class ImageJobRequest(BaseModel):
    session_id: str
    prompt: str = Field(..., min_length=1, max_length=1000)
    source_image: Optional[str] = None


def _view_out(view: Optional[ImageJobView]) -> Dict[str, Any]:
    if view is None:
        return {"state": "IDLE", "job": None, "attempts": 0}
    job = view.job
    return {
        "state": view.state,
        "attempts": view.attempts,
        "job": {
            "taskId": job.task_id,
            "status": job.status,
            "provider": job.provider,
            "resultUrls": job.result_urls,
            "createdAt": job.created_at.isoformat(),
        } if job else None,
    }


@router.post("/jobs", status_code=202)
def create_image_job(
    payload: ImageJobRequest,
    background_tasks: BackgroundTasks,
    identity: Dict[str, Any] = Depends(get_identity),
):
    view = request_image(
        identity["user_id"],
        payload.session_id,
        payload.prompt,
        payload.source_image,
        identity=identity,
        defer=background_tasks.add_task,
    )
    return _view_out(view)


@router.get("/jobs/{session_id}")
def read_image_job(session_id: str, identity: Dict[str, Any] = Depends(get_identity)):
    return _view_out(get_image_job(session_id, identity["user_id"]))


@router.delete("/jobs/{session_id}")
def delete_image_job(session_id: str, identity: Dict[str, Any] = Depends(get_identity)):
    return {"cancelled": cancel_image_job(session_id, identity["user_id"])}
