from __future__ import annotations

import base64
import logging
from typing import Any, Optional

import httpx

from ...errors import (
    AuthenticationError,
    BadRequestError,
    ContentPolicyError,
    PermissionDeniedError,
    ProviderAPIError,
    ProviderError,
    RateLimitError,
)
from ...provenance.codec import detect_format
from ..provider import ImageProvider
from ..types import ImageGenRequest, ProviderResult, TokenUsage

logger = logging.getLogger(__name__)

MIME_TYPES = {"png": "image/png", "jpeg": "image/jpeg", "webp": "image/webp"}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            code = error.get("code") or ""
            message = error.get("message") or ""
            return f"{code}: {message}" if code and code not in message else message
    return response.text or response.reason_phrase


def map_http_error(response: httpx.Response) -> ProviderError:
    status = response.status_code
    message = _error_message(response)

    if status == 401:
        return AuthenticationError(
            "Authentication failed. Please check your OPENAI_API_KEY environment variable.",
            status=status,
        )
    if status == 403:
        return PermissionDeniedError(
            "Access denied. Your organization must be verified to use this image model.",
            status=status,
        )
    if status == 400:
        if "content_policy_violation" in message:
            return ContentPolicyError(
                "Content policy violation: the prompt was rejected by the safety filters.",
                status=status,
            )
        return BadRequestError(f"Bad request: {message}", status=status)
    if status == 429:
        return RateLimitError(f"rate_limit: {message}", status=status)
    return ProviderAPIError(f"OpenAI API error ({status}): {message}", status=status)


def _common_fields(req: ImageGenRequest) -> dict[str, Any]:
    fields: dict[str, Any] = {"model": req.model, "prompt": req.prompt, "n": req.sample_count}
    if req.size != "auto":
        fields["size"] = req.size
    if req.quality != "auto":
        fields["quality"] = req.quality
    if req.output_format != "png":
        fields["output_format"] = req.output_format
    if req.moderation and req.moderation != "auto":
        fields["moderation"] = req.moderation
    return fields



def _upload(name: str, data: bytes) -> tuple[str, bytes, str]:
    fmt = detect_format(data) or "png"
    ext = "jpg" if fmt == "jpeg" else fmt
    return f"{name}.{ext}", data, MIME_TYPES[fmt]


class OpenAIProvider(ImageProvider):
    def __init__(
        self,
        api_key: str,
        *,
        organization: Optional[str] = None,
        base_url: str = "https://api.openai.com/v1",
        timeout_sec: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"}
        if organization:
            headers["OpenAI-Organization"] = organization
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/",
            headers=headers,
            timeout=timeout_sec,
            follow_redirects=True,
            transport=transport,
        )
        # image URLs may point at other hosts; never send credentials there
        self._download_client = httpx.AsyncClient(
            timeout=timeout_sec,
            follow_redirects=True,
            transport=transport,
        )

    @property
    def provider_id(self) -> str:
        return "openai"

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._download_client.aclose()

    async def generate(self, req: ImageGenRequest) -> ProviderResult:
        body = _common_fields(req)
        if req.background:
            body["background"] = req.background
        logger.debug("POST images/generations %s", body)
        payload = await self._post("images/generations", json=body)
        return await self._parse(payload, req)

    async def edit(self, req: ImageGenRequest) -> ProviderResult:
        if req.reference_image is None:
            raise BadRequestError("edit requires a reference image")
        data = {k: str(v) for k, v in _common_fields(req).items()}
        if req.input_fidelity and req.model == "gpt-image-1.5":
            data["input_fidelity"] = req.input_fidelity
        files = {"image": _upload("image", req.reference_image)}
        if req.mask_image is not None:
            files["mask"] = _upload("mask", req.mask_image)
        logger.debug("POST images/edits %s (image redacted)", data)
        payload = await self._post("images/edits", data=data, files=files)
        return await self._parse(payload, req)

    async def _post(self, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.post(path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderAPIError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise ProviderAPIError(f"Request failed: {e}") from e
        if response.is_error:
            raise map_http_error(response)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderAPIError("Provider returned a non-JSON response") from e

    async def _parse(self, payload: dict[str, Any], req: ImageGenRequest) -> ProviderResult:
        items = payload.get("data") or []
        if not items:
            raise ProviderAPIError("No image data returned from API")

        images = []
        for i, item in enumerate(items, start=1):
            if item.get("b64_json"):
                images.append(base64.b64decode(item["b64_json"]))
            elif item.get("url"):
                images.append(await self._download(item["url"], i))
            else:
                raise ProviderAPIError(f"No image data (b64_json or url) in response for image {i}")
        logger.debug("Received %d image(s) from API", len(images))

        usage = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict) and "input_tokens" in raw_usage:
            usage = TokenUsage(
                input_tokens=int(raw_usage.get("input_tokens") or 0),
                output_tokens=int(raw_usage.get("output_tokens") or 0),
            )
        return ProviderResult(images=images, usage=usage, model_id=payload.get("model") or req.model)

    async def _download(self, url: str, index: int) -> bytes:
        try:
            response = await self._download_client.get(url)
        except httpx.RequestError as e:
            raise ProviderAPIError(f"Failed to download image {index}: {e}") from e
        if response.is_error:
            raise ProviderAPIError(f"Failed to download image {index}: {response.reason_phrase}")
        return response.content
