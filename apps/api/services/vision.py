"""Vision analysis of generated front views.

Extracted features (colors, materials, key elements, proportions) are cached
on the approval so the remaining views stay consistent with the front view.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from typing import Any, Dict, Optional

import httpx
from openai import AsyncOpenAI

from config import settings
from services.generation import get_openai_client

logger = logging.getLogger(__name__)

FEATURE_SYSTEM_PROMPT = """
You are an expert at analyzing product images and extracting key features for manufacturing consistency.

Analyze the product image and extract:
1. All visible colors with hex codes
2. Materials and textures
3. Key design elements
4. Estimated dimensions/proportions
5. Detailed product description

Return a strict JSON object matching this schema:
{
  "colors": [{"name": "string", "hex": "#RRGGBB"}],
  "materials": ["string"],
  "keyElements": ["string"],
  "dimensions": {"width": "string", "height": "string"},
  "description": "string"
}
"""


def default_features(description: str = "Product features could not be extracted") -> Dict[str, Any]:
    return {
        "colors": [],
        "materials": [],
        "key_elements": [],
        "estimated_dimensions": {"width": "unknown", "height": "unknown"},
        "description": description,
    }


def normalize_features(raw: Any) -> Dict[str, Any]:
    """Coerce model output (or a cached payload) into the stored feature shape."""
    if not isinstance(raw, dict):
        return default_features()

    def _list(*keys: str) -> list:
        for key in keys:
            value = raw.get(key)
            if isinstance(value, list):
                return value
        return []

    dimensions = raw.get("estimated_dimensions") or raw.get("estimatedDimensions") or raw.get("dimensions")
    if not isinstance(dimensions, dict):
        dimensions = {"width": "unknown", "height": "unknown"}

    return {
        "colors": _list("colors"),
        "materials": [str(item) for item in _list("materials")],
        "key_elements": [str(item) for item in _list("key_elements", "keyElements")],
        "estimated_dimensions": dimensions,
        "description": str(raw.get("description") or ""),
    }


class VisionAnalyzer:
    """Extracts product features from an image URL with a multimodal model."""

    def __init__(self, client: Optional[AsyncOpenAI], model: Optional[str] = None):
        self._client = client
        self._model = model or settings.OPENAI_VISION_MODEL

    async def _as_data_url(self, image_url: str) -> str:
        # Inline remote images so the model never has to download them itself.
        if image_url.startswith("data:"):
            return image_url
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as http:
            response = await http.get(image_url)
            response.raise_for_status()
        mime_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return f"data:{mime_type};base64,{base64.b64encode(response.content).decode('utf-8')}"

    async def extract_features(self, image_url: str) -> Dict[str, Any]:
        if self._client is None:
            logger.warning("Using MOCK vision analysis.")
            return default_features("Local fallback analysis: features will be inferred from the front view.")

        image_data_url = await self._as_data_url(image_url)
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": FEATURE_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "text",
                            "text": "Extract all features from this product image for consistent view generation:",
                        },
                        {"type": "image_url", "image_url": {"url": image_data_url}},
                    ],
                },
            ],
            response_format={"type": "json_object"},
            max_tokens=1000,
        )
        content = response.choices[0].message.content
        if not content:
            raise ValueError("No response from feature extraction")
        return normalize_features(json.loads(content))


def build_vision_analyzer() -> VisionAnalyzer:
    return VisionAnalyzer(get_openai_client(settings.OPENAI_API_KEY))


async def analyze_front_view_in_background(
    storage_provider,
    analyzer: VisionAnalyzer,
    *,
    approval_id: str,
    user_id: str,
    front_view_url: str,
    timeout_seconds: Optional[float] = None,
) -> None:
    """Cache extracted features on the approval. Runs after the response is sent."""
    timeout = timeout_seconds or settings.GENERATION_TIMEOUT_SECONDS
    try:
        features = await asyncio.wait_for(analyzer.extract_features(front_view_url), timeout=timeout)
        async with storage_provider.open() as storage:
            approval = await storage.get_approval(approval_id, user_id)
            # A newer front view may have replaced the analysed one meanwhile.
            if approval is None or approval.front_view_url != front_view_url:
                logger.info("[Vision] Skipping stale analysis for approval %s", approval_id)
                return
            await storage.update_approval(approval_id, extracted_features=features)
        logger.info("[Vision] Cached features for approval %s", approval_id)
    except Exception as exc:
        logger.warning("[Vision] Background analysis failed for approval %s: %s", approval_id, exc)
