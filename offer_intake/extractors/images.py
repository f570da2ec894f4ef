"""Image extractor (Pillow metadata + OCR) and the OCR engines it uses."""

from __future__ import annotations

import base64
import io
from pathlib import Path
from typing import Any, Protocol

import structlog
from openai import OpenAI
from PIL import Image

from ..config import EnrichmentConfig
from .base import BaseExtractor

logger = structlog.get_logger()

OCR_PROMPT = (
    "Transcribe all text visible in this image exactly as written. "
    "Keep table rows on separate lines and separate cells with ' | '. "
    "Return only the transcribed text."
)


class OcrEngine(Protocol):
    def ocr(self, image: bytes, mime_type: str) -> str: ...


class NullOcr:
    """OCR engine used when OCR is disabled: recognises nothing."""

    def ocr(self, image: bytes, mime_type: str) -> str:
        return ""


class OpenAIVisionOcr:
    """OCR through a vision-capable chat model.

    The image is sent inline as a base64 data URL.  OpenAI client errors
    propagate so the caller can classify them as transient or permanent.
    """

    def __init__(self, client: OpenAI, model: str) -> None:
        self._client = client
        self._model = model

    @classmethod
    def from_config(cls, config: EnrichmentConfig) -> OpenAIVisionOcr:
        client = OpenAI(
            api_key=config.api_key.get_secret_value(),
            timeout=config.timeout_seconds,
            max_retries=0,
        )
        return cls(client, config.ocr_model)

    def ocr(self, image: bytes, mime_type: str) -> str:
        b64_image = base64.b64encode(image).decode("utf-8")
        response = self._client.chat.completions.create(
            model=self._model,
            temperature=0,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": OCR_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{b64_image}"},
                        },
                    ],
                }
            ],
        )
        text = response.choices[0].message.content or ""
        logger.debug("ocr_complete", model=self._model, chars=len(text))
        return text


def build_ocr_engine(config: EnrichmentConfig) -> OcrEngine:
    if not config.ocr_enabled:
        return NullOcr()
    return OpenAIVisionOcr.from_config(config)


class ImageExtractor(BaseExtractor):
    family = "image"
    extensions = (".png", ".jpg", ".jpeg")

    def __init__(self, ocr: OcrEngine) -> None:
        self._ocr = ocr

    def extract(self, path: Path, extension: str) -> tuple[str, dict[str, Any]]:
        raw = path.read_bytes()
        with Image.open(io.BytesIO(raw)) as img:
            img.verify()
        # verify() leaves the image unusable, so reopen for metadata
        with Image.open(io.BytesIO(raw)) as img:
            metadata: dict[str, Any] = {
                "format": img.format,
                "width": img.width,
                "height": img.height,
                "mode": img.mode,
            }
            mime_type = Image.MIME.get(img.format or "", "image/png")

        text = self._ocr.ocr(raw, mime_type)
        metadata["ocr_chars"] = len(text)
        return text, metadata
