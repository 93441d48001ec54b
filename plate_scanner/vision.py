"""
vision.py — Client for a remote multimodal vision service.

The frame is JPEG-encoded, inlined as a base64 data URI and sent to an
OpenAI-compatible chat-completions endpoint together with a short
instruction: reply with the plate text, or NONE.

Any endpoint that speaks the OpenAI wire format works (OpenAI itself,
Gemini's OpenAI-compatible API, a local vLLM …) — set ``remote.base_url``
and ``remote.model`` accordingly.

Failure modes are mapped onto our own exceptions so the fallback chain
never needs to know about the openai package:

  VisionAuthError        401 / 403
  PayloadTooLargeError   image over the size ceiling (checked locally) or 413
  RateLimitedError       429
  VisionTransportError   timeouts, connection errors, other HTTP errors
"""

import base64
import logging
from typing import Optional

import cv2
import numpy as np
import openai

from .errors import (
    DetectorRuntimeError,
    PayloadTooLargeError,
    RateLimitedError,
    VisionAuthError,
    VisionTransportError,
)

logger = logging.getLogger(__name__)

PLATE_PROMPT = (
    "Look at this image and find any vehicle license plate. "
    "Reply with ONLY the license plate text exactly as written, "
    "with no explanation. If no license plate is clearly visible, "
    "reply with NONE."
)

NONE_SENTINEL = "NONE"


def encode_jpeg(image: np.ndarray, quality: int = 80) -> str:
    """JPEG-encode *image* and return it base64-encoded."""
    ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
    if not ok:
        raise DetectorRuntimeError("JPEG encoding failed")
    return base64.b64encode(buffer.tobytes()).decode("ascii")


def parse_reply(reply: Optional[str]) -> Optional[str]:
    """Pull the plate text out of a free-text model reply.

    Returns None for an empty reply or the "none" sentinel.
    """
    if not reply:
        return None
    # Models sometimes add an explanation after the plate; keep the first
    # non-empty line
    for line in reply.strip().splitlines():
        text = line.strip().strip("`\"'.").strip()  # markdown quoting
        if text:
            break
    else:
        return None

    upper = text.upper()
    if upper == NONE_SENTINEL or "NO LICENSE PLATE" in upper or "NO PLATE" in upper:
        return None
    return text


class VisionServiceClient:
    """Ask a remote vision model for the plate text in an image.

    Args:
        config: Full app config dict — we read the "remote" section.
        client: Pre-built ``openai.AsyncOpenAI`` (mainly for tests).
    """

    def __init__(self, config: dict, client=None):
        cfg = config["remote"]
        self.api_key: str = cfg["api_key"]
        self.base_url: Optional[str] = cfg["base_url"]
        self.model: str = cfg["model"]
        self.timeout: float = cfg["timeout"]
        self.max_bytes: int = int(cfg["max_payload_mb"] * 1024 * 1024)
        self.jpeg_quality: int = cfg["jpeg_quality"]
        self.max_tokens: int = cfg["max_tokens"]
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.api_key) or self._client is not None

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise VisionAuthError("No API key configured for the vision service")
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,  # the scan loop is the retry policy
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def read_plate(self, image: np.ndarray) -> Optional[str]:
        """Return the raw plate text the model sees, or None.

        Raises:
            VisionServiceError subclasses (see module docstring).
        """
        # Size check is on the base64 text, which is what goes over the wire
        b64 = encode_jpeg(image, self.jpeg_quality)
        if len(b64) > self.max_bytes:
            raise PayloadTooLargeError(
                f"Encoded image is {len(b64) / 1048576:.1f} MB "
                f"(limit {self.max_bytes / 1048576:.0f} MB)"
            )

        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": PLATE_PROMPT},
                            {
                                "type": "image_url",
                                "image_url": {"url": f"data:image/jpeg;base64,{b64}"},
                            },
                        ],
                    }
                ],
                max_tokens=self.max_tokens,
                temperature=0,  # same frame → same answer
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise VisionAuthError(str(exc)) from exc
        # Order matters: the specific status errors subclass APIStatusError
        except openai.RateLimitError as exc:
            raise RateLimitedError(str(exc)) from exc
        except openai.APIStatusError as exc:
            if exc.status_code == 413:
                raise PayloadTooLargeError(str(exc)) from exc
            raise VisionTransportError(f"HTTP {exc.status_code}: {exc}") from exc
        except openai.APIConnectionError as exc:
            # APITimeoutError is a subclass
            raise VisionTransportError(str(exc)) from exc

        if not response.choices:
            return None
        reply = response.choices[0].message.content
        logger.debug("Vision reply: %r", reply)
        return parse_reply(reply)
