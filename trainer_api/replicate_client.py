import asyncio
import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx
from pydantic import ValidationError as SchemaError

from .errors import TransportError, ValidationError
from .models import TrainingJob
from .settings import Settings

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.replicate_api_base,
        headers={"Authorization": f"Bearer {settings.replicate_api_token}"},
        timeout=httpx.Timeout(settings.http_timeout_sec),
    )


def parse_model_ref(model_ref: str) -> Tuple[str, str, str]:
    """Split ``owner/name:version`` into its three parts."""
    name, sep, version = model_ref.partition(":")
    owner, slash, model = name.partition("/")
    if not (sep and slash and owner and model and version):
        raise ValidationError(f"model reference must look like owner/name:version, got {model_ref!r}")
    return owner, model, version


def _parse_job(data: Dict[str, Any]) -> TrainingJob:
    try:
        return TrainingJob.model_validate(data)
    except SchemaError as exc:
        raise TransportError(f"unexpected training payload: {exc}") from exc


class ReplicateClient:
    """Thin async wrapper over the Replicate trainings and predictions API."""

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc
        if not response.is_success:
            raise TransportError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{method} {path} returned invalid JSON") from exc

    async def submit(self, model_ref: str, params: Dict[str, Any], destination: Optional[str] = None) -> TrainingJob:
        owner, model, version = parse_model_ref(model_ref)
        body: Dict[str, Any] = {"input": params}
        if destination:
            body["destination"] = destination
        data = await self._request("POST", f"/models/{owner}/{model}/versions/{version}/trainings", json=body)
        job = _parse_job(data)
        logger.info("Submitted training %s for %s/%s", job.id, owner, model)
        return job

    async def get_status(self, job_id: str) -> TrainingJob:
        data = await self._request("GET", f"/trainings/{job_id}")
        return _parse_job(data)

    async def run_prediction(
        self,
        model_ref: str,
        params: Dict[str, Any],
        poll_interval: float = 1.0,
        timeout: float = 300.0,
    ) -> Any:
        _, _, version = parse_model_ref(model_ref)
        prediction = await self._request(
            "POST", "/predictions", json={"version": version, "input": params}, headers={"Prefer": "wait"}
        )
        deadline = time.monotonic() + timeout
        while prediction.get("status") not in TERMINAL_STATUSES:
            if time.monotonic() > deadline:
                raise TransportError(f"prediction {prediction.get('id')} did not finish in {timeout:.0f}s")
            await asyncio.sleep(poll_interval)
            prediction = await self._request("GET", f"/predictions/{prediction['id']}")

        if prediction["status"] != "succeeded":
            raise TransportError(f"prediction {prediction.get('id')} {prediction['status']}: {prediction.get('error')}")
        return prediction.get("output")
