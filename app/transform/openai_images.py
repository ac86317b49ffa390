"""OpenAI image client used to virtually stage room photos.

Two modes:

* ``edit``: send the photo to ``/images/edits`` with the staging prompt.
* ``generate``: describe the wanted furnishings and ask ``/images/generations``
  (dall-e-3) for the staged room, wrapped in a prompt that pins the
  architecture of the original photo.
"""

import base64
import logging
from typing import Any, Dict, Optional

import httpx

from app.jobs.errors import TransformFailed
from app.transform.base import TransformInvoker

logger = logging.getLogger(__name__)

ROOM_ANALYSIS_PROMPT = (
    "Analyze this room image for virtual staging. Describe ONLY what furniture "
    "and decor should be added. Do NOT describe the room's existing "
    "architecture (walls, windows, floors, ceiling). Focus on the room type, "
    "suitable furniture pieces, style, colors and materials, and decor items. "
    "Be specific about furniture placement and style."
)

GENERATION_PROMPT_TEMPLATE = (
    "Virtually stage this room by adding furniture and decor ONLY. CRITICAL: "
    "Keep the room's walls, windows, doors, flooring, ceiling, lighting, and all "
    "architectural features EXACTLY as shown in the original photo. Do not "
    "change the room structure, perspective, or architecture in any way.\n\n"
    "Add these furnishings: {furnishings}\n\n"
    "The result must look like the same room with furniture added, not a "
    "different room. Maintain the exact camera angle, lighting conditions, and "
    "room dimensions. Only add furniture, decor, and styling elements."
)

IMAGE_MODES = ("edit", "generate")


class OpenAIImageEditor(TransformInvoker):
    """Stages a room photo through the OpenAI images API.

    In ``edit`` mode the photo goes to ``POST {base_url}/images/edits``; with
    ``analyze_room_first`` it is first described by a vision model and the
    furnishing suggestions are appended to the edit prompt.

    In ``generate`` mode the furnishings (the vision model's suggestions, or
    the staging prompt itself when analysis is off) are wrapped in
    ``generation_prompt_template`` and sent to ``POST {base_url}/images/generations``.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.openai.com/v1",
        model: str = "dall-e-2",
        size: str = "1024x1024",
        organization: Optional[str] = None,
        timeout: float = 120.0,
        analyze_room_first: bool = False,
        vision_model: str = "gpt-4o",
        mode: str = "edit",
        quality: Optional[str] = None,
        generation_prompt_template: str = GENERATION_PROMPT_TEMPLATE,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if mode not in IMAGE_MODES:
            raise ValueError(f"Unknown image mode {mode!r}; expected one of {IMAGE_MODES}")
        if "{furnishings}" not in generation_prompt_template:
            raise ValueError("generation_prompt_template must contain {furnishings}")
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._size = size
        self._mode = mode
        self._quality = quality
        self._generation_prompt_template = generation_prompt_template
        self._analyze_room_first = analyze_room_first
        self._vision_model = vision_model
        self._headers = {"Authorization": f"Bearer {api_key}"}
        if organization:
            self._headers["OpenAI-Organization"] = organization
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def transform(self, image: bytes, prompt: str, mask: Optional[bytes] = None) -> bytes:
        if self._mode == "generate":
            return await self.generate(image, prompt)
        return await self.edit(image, prompt, mask)

    async def edit(self, image: bytes, prompt: str, mask: Optional[bytes] = None) -> bytes:
        if self._analyze_room_first:
            suggestions = await self.describe_furnishings(image)
            prompt = f"{prompt}\n\nAdd these furnishings: {suggestions}"

        data = {"model": self._model, "prompt": prompt, "n": "1", "size": self._size}
        if self._model.startswith("dall-e"):
            data["response_format"] = "b64_json"
        files = {"image": ("image.png", image, "image/png")}
        if mask is not None:
            files["mask"] = ("mask.png", mask, "image/png")

        logger.info("Requesting image edit (model=%s, %d bytes)", self._model, len(image))
        payload = await self._post("/images/edits", data=data, files=files)
        return await self._image_from(payload, "image edit")

    async def generate(self, image: bytes, prompt: str) -> bytes:
        """Generate a staged version of the room; the photo only feeds the analysis."""
        furnishings = prompt
        if self._analyze_room_first:
            furnishings = await self.describe_furnishings(image)

        body: Dict[str, Any] = {
            "model": self._model,
            "prompt": self._generation_prompt_template.replace("{furnishings}", furnishings),
            "n": 1,
            "size": self._size,
        }
        if self._quality:
            body["quality"] = self._quality

        logger.info("Requesting image generation (model=%s, quality=%s)", self._model, self._quality)
        payload = await self._post("/images/generations", json=body)
        return await self._image_from(payload, "image generation")

    async def describe_furnishings(self, image: bytes) -> str:
        data_url = "data:image/png;base64," + base64.b64encode(image).decode("ascii")
        body = {
            "model": self._vision_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ROOM_ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": data_url}},
                    ],
                }
            ],
            "max_tokens": 500,
        }
        payload = await self._post("/chat/completions", json=body)
        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise TransformFailed("room analysis returned no content")
        if not content:
            raise TransformFailed("room analysis returned no content")
        logger.info("Furnishing suggestions: %.200s", content)
        return content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                f"{self._base_url}{path}", headers=self._headers, **kwargs
            )
        except httpx.HTTPError as exc:
            raise TransformFailed(f"{path} request failed: {type(exc).__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise TransformFailed(
                f"{path} returned HTTP {response.status_code}: {_error_message(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise TransformFailed(f"{path} returned invalid JSON") from exc

    async def _download(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransformFailed(f"downloading staged image failed: {exc}") from exc
        return response.content

    async def _image_from(self, payload: Dict[str, Any], what: str) -> bytes:
        try:
            item = payload["data"][0]
        except (KeyError, IndexError, TypeError):
            raise TransformFailed(f"{what} returned no image")

        if item.get("b64_json"):
            try:
                return base64.b64decode(item["b64_json"])
            except ValueError as exc:
                raise TransformFailed(f"undecodable image payload: {exc}") from exc
        if item.get("url"):
            return await self._download(item["url"])
        raise TransformFailed(f"{what} returned neither b64_json nor url")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return response.reason_phrase
