"""Image generation providers used by the workflow stages."""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx
from openai import AsyncOpenAI

from config import settings
from services.errors import GenerationFailure

logger = logging.getLogger(__name__)

IMAGE_SIZE = "1024x1024"
MAX_REFERENCE_BYTES = 20 * 1024 * 1024


@dataclass
class GeneratedImage:
    url: str
    prompt: str


class ImageProvider(ABC):
    """Turns a prompt plus reference images into a hosted image URL."""

    @abstractmethod
    async def generate_image(self, prompt: str, reference_images: Sequence[str] = ()) -> GeneratedImage:
        ...


def get_openai_client(api_key: str) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(api_key=api_key)


def _decode_data_url(url: str) -> Tuple[bytes, str]:
    header, _, payload = url.partition(",")
    content_type = header[5:].split(";")[0] or "image/png"
    return base64.b64decode(payload), content_type


class OpenAIImageProvider(ImageProvider):
    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: Optional[str] = None,
        media_dir: Optional[str] = None,
        media_base_url: Optional[str] = None,
    ):
        self._client = client
        self._model = model or settings.OPENAI_IMAGE_MODEL
        self._media_dir = Path(media_dir or settings.GENERATED_MEDIA_DIR)
        self._media_base_url = (media_base_url or settings.GENERATED_MEDIA_BASE_URL).rstrip("/")

    async def _fetch_references(self, urls: Sequence[str]) -> List[Tuple[str, bytes, str]]:
        files: List[Tuple[str, bytes, str]] = []
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as http:
            for index, url in enumerate(urls):
                if url.startswith("data:"):
                    content, content_type = _decode_data_url(url)
                else:
                    response = await http.get(url)
                    response.raise_for_status()
                    content = response.content
                    content_type = response.headers.get("content-type", "image/png").split(";")[0]
                if len(content) > MAX_REFERENCE_BYTES:
                    raise GenerationFailure(f"Reference image {index + 1} exceeds {MAX_REFERENCE_BYTES} bytes")
                extension = content_type.split("/")[-1] or "png"
                files.append((f"reference_{index}.{extension}", content, content_type))
        return files

    def _store_b64(self, payload: str) -> str:
        self._media_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{uuid.uuid4().hex}.png"
        (self._media_dir / filename).write_bytes(base64.b64decode(payload))
        return f"{self._media_base_url}/{filename}"

    async def generate_image(self, prompt: str, reference_images: Sequence[str] = ()) -> GeneratedImage:
        references = [url for url in reference_images if url]
        if references:
            files = await self._fetch_references(references)
            response = await self._client.images.edit(
                model=self._model,
                image=files,
                prompt=prompt,
                size=IMAGE_SIZE,
            )
        else:
            response = await self._client.images.generate(
                model=self._model,
                prompt=prompt,
                size=IMAGE_SIZE,
            )

        image = response.data[0] if response.data else None
        if image is None:
            raise GenerationFailure("Image provider returned no image")
        if image.url:
            return GeneratedImage(url=image.url, prompt=prompt)
        if image.b64_json:
            url = await asyncio.to_thread(self._store_b64, image.b64_json)
            return GeneratedImage(url=url, prompt=prompt)
        raise GenerationFailure("Image provider returned neither a URL nor image data")


class PlaceholderImageProvider(ImageProvider):
    """Local fallback that returns placeholder artwork without calling a model."""

    async def generate_image(self, prompt: str, reference_images: Sequence[str] = ()) -> GeneratedImage:
        headline = re.sub(r"\s+", " ", prompt).strip()[:40] or "Genpire"
        return GeneratedImage(
            url=f"https://placehold.co/1024x1024/png?text={quote(headline)}",
            prompt=prompt,
        )


def build_image_provider() -> ImageProvider:
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        logger.warning("OPENAI_API_KEY not configured; using placeholder image provider.")
        return PlaceholderImageProvider()
    return OpenAIImageProvider(client)
