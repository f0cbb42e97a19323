import base64
import logging
from typing import Optional

import httpx

from .errors import TransportError
from .models import GenerateImageResponse
from .replicate_client import ReplicateClient

logger = logging.getLogger(__name__)

PREVIEW_INPUT = {
    "model": "dev",
    "lora_scale": 1,
    "num_outputs": 1,
    "aspect_ratio": "3:2",
    "output_format": "png",
    "guidance_scale": 3.5,
    "output_quality": 90,
    "prompt_strength": 0.8,
    "extra_lora_scale": 1,
    "num_inference_steps": 28,
}


async def generate_preview(
    jobs: ReplicateClient,
    http: httpx.AsyncClient,
    model_ref: str,
    prompt: str,
    extra_lora: Optional[str] = None,
) -> GenerateImageResponse:
    logger.info("Generating image, extra_lora=%s", extra_lora or "none")
    output = await jobs.run_prediction(model_ref, {**PREVIEW_INPUT, "prompt": prompt, "extra_lora": extra_lora or ""})

    if isinstance(output, list):
        output = output[0] if output else None
    image_url = output
    if not image_url:
        raise TransportError("prediction returned no image")

    try:
        response = await http.get(image_url, follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise TransportError(f"GET {image_url} failed: {exc}") from exc
    if not response.is_success:
        raise TransportError(f"GET {image_url} returned HTTP {response.status_code}", status_code=response.status_code)

    encoded = base64.b64encode(response.content).decode("ascii")
    return GenerateImageResponse(imageUrl=image_url, base64Image=f"data:image/webp;base64,{encoded}")
