"""图片指纹 — data URI / base64 解码 + 全量 SHA-256。"""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from dataclasses import dataclass

from toolsight.errors import AnalysisError, ErrorKind

_DATA_URI = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[\w-]+=[\w.-]+)*;base64,", re.I)
_WHITESPACE = re.compile(r"\s+")

DEFAULT_MEDIA_TYPE = "image/jpeg"


@dataclass(frozen=True)
class AnalysisRequest:
    image: bytes
    fingerprint: str
    media_type: str = DEFAULT_MEDIA_TYPE

    @property
    def size(self) -> int:
        return len(self.image)

    def to_base64(self) -> str:
        return base64.standard_b64encode(self.image).decode("ascii")

    def to_data_uri(self) -> str:
        return f"data:{self.media_type};base64,{self.to_base64()}"


def compute_fingerprint(image: bytes) -> str:
    """对完整字节内容做 SHA-256，返回 64 位十六进制串。"""
    return hashlib.sha256(image).hexdigest()


def decode_image_payload(payload: str | None, max_bytes: int) -> tuple[bytes, str]:
    """解码 data URI 或裸 base64，返回 (bytes, media_type)。

    缺失、无法解码、为空或超过 max_bytes 均抛 InvalidPayload。
    """
    if not payload or not isinstance(payload, str):
        raise AnalysisError(ErrorKind.INVALID_PAYLOAD, "No image provided")

    media_type = DEFAULT_MEDIA_TYPE
    body = payload.strip()
    match = _DATA_URI.match(body)
    if match:
        media_type = (match.group("mime") or DEFAULT_MEDIA_TYPE).lower()
        body = body[match.end():]
    elif body.startswith("data:"):
        raise AnalysisError(ErrorKind.INVALID_PAYLOAD, "Image data URI must be base64 encoded")

    body = _WHITESPACE.sub("", body)
    # base64 解码后约为 3/4，先按编码长度粗筛，避免解码超大报文
    if len(body) * 3 // 4 > max_bytes + 2:
        raise AnalysisError(
            ErrorKind.INVALID_PAYLOAD, f"Image exceeds the {max_bytes} byte limit"
        )

    try:
        image = base64.b64decode(body + "=" * (-len(body) % 4), validate=True)
    except (binascii.Error, ValueError) as e:
        raise AnalysisError(ErrorKind.INVALID_PAYLOAD, f"Image is not valid base64: {e}") from e

    if not image:
        raise AnalysisError(ErrorKind.INVALID_PAYLOAD, "Image is empty")
    if len(image) > max_bytes:
        raise AnalysisError(
            ErrorKind.INVALID_PAYLOAD, f"Image exceeds the {max_bytes} byte limit"
        )
    return image, media_type


def build_request(payload: str | None, max_bytes: int) -> AnalysisRequest:
    image, media_type = decode_image_payload(payload, max_bytes)
    return AnalysisRequest(
        image=image, fingerprint=compute_fingerprint(image), media_type=media_type
    )
