"""Image generation providers (async submit / poll protocol).

Novita exposes img2img and txt2img as asynchronous tasks; both are polled
through the same task-result endpoint. The txt2img mode ignores the source
image and serves as the lower-fidelity fallback.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Optional, Protocol

import httpx

from companion.core.config import settings
from companion.core.errors import AccessDeniedError, ProviderError, QuotaExceededError

PollStatus = Literal["RUNNING", "SUCCEEDED", "FAILED"]

NOVITA_STATUS_MAP: Dict[str, PollStatus] = {
    "TASK_STATUS_QUEUED": "RUNNING",
    "TASK_STATUS_PROCESSING": "RUNNING",
    "TASK_STATUS_SUCCEED": "SUCCEEDED",
    "TASK_STATUS_FAILED": "FAILED",
}

DEFAULT_IMAGE_MODEL = "epicrealism_naturalSinRC1VAE_106430.safetensors"
DEFAULT_NEGATIVE_PROMPT = "lowres, bad anatomy, bad hands, text, error, missing fingers, cropped, worst quality, blurry"


@dataclass
class PollResult:
    status: PollStatus
    urls: List[str] = field(default_factory=list)
    reason: Optional[str] = None


class ImageProvider(Protocol):
    name: str

    def submit(self, prompt: str, source_image: Optional[str] = None) -> Optional[str]:
        """Start a task; returns the task id, or None if the provider gave none."""
        ...

    def poll(self, task_id: str) -> PollResult:
        ...


class NovitaImageProvider:
    def __init__(
        self,
        mode: Literal["img2img", "txt2img"] = "img2img",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_name: str = DEFAULT_IMAGE_MODEL,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.mode = mode
        self.name = f"novita-{mode}"
        self.api_key = api_key if api_key is not None else settings.NOVITA_API_KEY
        self.base_url = (base_url or settings.NOVITA_BASE_URL).rstrip("/")
        self.model_name = model_name
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self._client = client

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if not self.api_key:
            raise ProviderError("Image provider is not configured")
        try:
            if self._client is not None:
                return self._client.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
            with httpx.Client(timeout=self.timeout) as client:
                return client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} transport error: {e.__class__.__name__}") from e

    def _build_request(self, prompt: str, source_image: Optional[str]) -> Dict:
        request = {
            "model_name": self.model_name,
            "prompt": prompt,
            "negative_prompt": DEFAULT_NEGATIVE_PROMPT,
            "width": 512,
            "height": 768,
            "image_num": 1,
            "steps": 30 if self.mode == "img2img" else 20,
            "seed": -1,
            "sampler_name": "DPM++ 2M Karras",
            "guidance_scale": 7.5,
        }
        if self.mode == "img2img" and source_image:
            request["image_base64"] = source_image
            request["strength"] = 0.6
        return {"extra": {"response_image_type": "jpeg"}, "request": request}

    def submit(self, prompt: str, source_image: Optional[str] = None) -> Optional[str]:
        if self.mode == "img2img" and not source_image:
            # img2img needs a reference image; let the caller fall back
            return None

        response = self._request("POST", f"{self.base_url}/v3/async/{self.mode}", json=self._build_request(prompt, source_image))

        if response.status_code == 402:
            raise QuotaExceededError("Image generation quota exhausted")
        if response.status_code == 403:
            raise AccessDeniedError("Image generation requires a premium plan")
        if response.status_code >= 300:
            raise ProviderError(f"{self.name} HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            return None
        task_id = payload.get("task_id") if isinstance(payload, dict) else None
        return str(task_id) if task_id else None

    def poll(self, task_id: str) -> PollResult:
        response = self._request("GET", f"{self.base_url}/v3/async/task-result", params={"task_id": task_id})
        if response.status_code >= 300:
            raise ProviderError(f"{self.name} task-result HTTP {response.status_code}")

        try:
            payload = response.json()
            task = payload["task"]
        except (ValueError, KeyError, TypeError) as e:
            raise ProviderError(f"{self.name} malformed task-result") from e

        status = NOVITA_STATUS_MAP.get(task.get("status"), "RUNNING")
        if status == "SUCCEEDED":
            urls = [img["image_url"] for img in payload.get("images") or [] if img.get("image_url")]
            if not urls:
                return PollResult(status="FAILED", reason="task succeeded without images")
            return PollResult(status="SUCCEEDED", urls=urls)
        if status == "FAILED":
            return PollResult(status="FAILED", reason=task.get("reason") or "task failed")
        return PollResult(status="RUNNING")


def build_default_providers():
    """Primary img2img provider and the txt2img fallback."""
    return NovitaImageProvider(mode="img2img"), NovitaImageProvider(mode="txt2img")
