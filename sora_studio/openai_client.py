# sora_studio/openai_client.py
# Thin async client for the OpenAI video (Sora) and chat completion endpoints

from typing import Any, Optional

import httpx

from .config import settings
from .errors import AppError, QuotaExceededError, UpstreamError, with_retry
from .logging_config import get_logger

logger = get_logger(__name__)

ENHANCE_SYSTEM_PROMPT = """You are a Hollywood director of photography and an expert in prompting \
video models such as Sora. Rewrite short video prompts into rich, professional cinematic \
descriptions while ALWAYS keeping the user's core concept.

Rules:
1. Never change the main subject, the setting or the core action. Only add technical and \
aesthetic detail.
2. Vary lenses, angles, camera moves and lighting between answers; do not reuse one template.
3. Treat the category and the visual style as mandatory filters for mood and look.

Cover: lens and framing (focal length, shot type, depth of field, composition), lighting and \
color (key light, palette, atmosphere such as haze or dust), one subtle fluid camera move, \
and the final rendering texture (film grain, 4K hyperrealism, ...).

Answer with ONLY the improved prompt, no titles or explanations, at most 300 words."""


class SoraClient:
    """
    Calls the OpenAI REST API:
      POST /videos                 -> {"id": "...", "status": "queued", ...}
      GET  /videos/{id}            -> {"status": "...", "progress": 42, ...}
      GET  /videos/{id}/content    -> binary mp4 (variant=thumbnail -> webp)
      POST /chat/completions       -> prompt enhancement
    Network errors and 5xx answers are retried with backoff.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.OPENAI_TIMEOUT
        self.attempts = attempts or settings.RETRY_ATTEMPTS
        self.retry_delay = settings.RETRY_DELAY if retry_delay is None else retry_delay
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict:
        if not self.api_key:
            raise AppError("OPENAI_API_KEY is not configured", code="CONFIG_ERROR", status_code=500)
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = self._headers()
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
            r = await client.request(method, path, headers=headers, **kwargs)
        if r.status_code >= 400:
            raise UpstreamError(
                f"openai error {r.status_code}: {r.text[:300]}",
                upstream_status=r.status_code,
            )
        return r

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await with_retry(
                lambda: self._send(method, path, **kwargs),
                attempts=self.attempts,
                delay=self.retry_delay,
            )
        except httpx.TransportError as e:
            raise UpstreamError(f"could not reach OpenAI: {e}") from e

    # -------------------------------------------------------------------
    # Videos
    # -------------------------------------------------------------------
    async def create_video(self, *, model: str, prompt: str, seconds: int, size: str) -> dict:
        payload = {"model": model, "prompt": prompt, "seconds": str(seconds), "size": size}
        logger.info("creating video: model=%s seconds=%s size=%s", model, seconds, size)
        r = await self._request("POST", "/videos", json=payload)
        data = r.json()
        logger.info("video accepted: id=%s status=%s", data.get("id"), data.get("status"))
        return data

    async def retrieve_video(self, video_id: str) -> dict:
        r = await self._request("GET", f"/videos/{video_id}")
        return r.json()

    async def download_content(self, video_id: str, variant: Optional[str] = None) -> bytes:
        params = {"variant": variant} if variant else None
        r = await self._request("GET", f"/videos/{video_id}/content", params=params)
        return r.content

    # -------------------------------------------------------------------
    # Prompt enhancement
    # -------------------------------------------------------------------
    async def enhance_prompt(
        self,
        prompt: str,
        *,
        duration: int | str = "",
        resolution: str = "",
        category: str = "",
        style: str | None = "",
        model: str = "",
    ) -> str:
        user_message = (
            "Video context:\n"
            f"- Duration: {duration}\n"
            f"- Resolution/aspect: {resolution}\n"
            f"- Category: {category}\n"
            f"- Visual style: {style or ''}\n"
            f"- Target model: {model}\n\n"
            f"Original prompt: {prompt}\n\n"
            "Enrich this prompt with cinematic detail that fits the style and category "
            "without changing the core concept."
        )
        payload = {
            "model": settings.ENHANCE_MODEL,
            "messages": [
                {"role": "system", "content": ENHANCE_SYSTEM_PROMPT},
                {"role": "user", "content": user_message},
            ],
            "temperature": 0.8,
            "max_tokens": 1000,
        }
        try:
            r = await self._request("POST", "/chat/completions", json=payload)
        except UpstreamError as e:
            logger.error("prompt enhancement failed: %s", e)
            raise _enhance_error(e.upstream_status) from e

        data = r.json()
        try:
            enhanced = data["choices"][0]["message"]["content"].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise UpstreamError(f"unexpected completion payload: {str(data)[:300]}") from e
        if not enhanced:
            raise UpstreamError("empty completion")
        return enhanced


def _enhance_error(status: int | None) -> UpstreamError:
    if status == 429:
        return QuotaExceededError("The OpenAI API key has no available credits.", upstream_status=status)
    if status == 401:
        return UpstreamError("Invalid OpenAI API key.", upstream_status=status)
    if status is not None and status >= 500:
        return UpstreamError("OpenAI is experiencing internal problems.", upstream_status=status)
    return UpstreamError("Failed to enhance the prompt.", upstream_status=status)
