"""模型输出解析 — 三级降级：严格 JSON → 分隔字段 → 关键词启发式。

每一级成功后都走同一个 normalize()，保证记录字段齐全、置信度在区间内。
三级全部失败抛 UnparsableResponse。
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from toolsight.errors import AnalysisError, ErrorKind
from toolsight.models import DEFAULT_MATERIALS, CanonicalRecord, ToolDetails, ToolType
from toolsight.pipeline.rules import (
    TYPE_PROFILES,
    match_materials,
    match_precision,
    match_type,
    resolve_type,
)

logger = logging.getLogger(__name__)

DELIMITER = "|"
MIN_DELIMITED_FIELDS = 3
MAX_NAME_LENGTH = 80
MAX_ITEM_LENGTH = 80

_FENCE = re.compile(r"```[\w-]*\s*(.*?)\s*```", re.S)
_NUMBER = re.compile(r"(\d+(?:[.,]\d+)?|[.,]\d+)\s*(%)?")
_CONFIDENCE_IN_TEXT = re.compile(
    r"(?:confidence|certainty|уверенность)\D{0,12}?(\d+(?:[.,]\d+)?|[.,]\d+)\s*(%)?", re.I
)
_LIST_SPLIT = re.compile(r"\s*(?:[,;/]|\band\b|\bи\b)\s*")
_ITEM_SPLIT = re.compile(r"\s*[;,]\s*")
_FIELD_LABEL = re.compile(
    r"^(?:name|type|materials?|confidence|features?|usage|precision|"
    r"название|тип|материалы?|уверенность|особенности|применение|точность)[\"']?\s*[:=-]\s*",
    re.I,
)
_FILLER = re.compile(
    r"^(?:this\s+(?:is|looks\s+like|appears\s+to\s+be)|it\s+(?:is|looks\s+like|appears\s+to\s+be)|"
    r"the\s+(?:image|picture|photo)\s+(?:shows|contains|depicts)|"
    r"(?:this|the)\s+(?:image|picture|photo)\s+is\s+of|"
    r"(?:an?\s+)?(?:image|picture|photo)\s+of|i\s+(?:can\s+)?see|there\s+is|"
    r"это|на\s+изображении|на\s+фото|изображен[аоы]?|показан[аоы]?|инструмент)"
    r"[\s:,-]+",
    re.I,
)
_ARTICLE = re.compile(r"^(?:an?|the)\s+", re.I)
_STRIP_CHARS = " \t\r\n\"'`{}[]*.,:;-"


class ParseTier(enum.Enum):
    STRICT = "strict"
    DELIMITED = "delimited"
    HEURISTIC = "heuristic"


@dataclass
class ParsedFields:
    """某一级解码得到的原始字段，尚未规范化。"""

    name: str | None = None
    type_text: str | None = None
    type_hint: ToolType | None = None
    materials: list[str] = field(default_factory=list)
    confidence: float | None = None
    features: list[str] = field(default_factory=list)
    usage: list[str] = field(default_factory=list)
    precision_text: str | None = None


@dataclass(frozen=True)
class ParseResult:
    record: CanonicalRecord
    tier: ParseTier


# ────────────────────── 文本工具 ──────────────────────


def strip_filler(name: str) -> str:
    """去掉 "this is" / "the image shows" 等前缀以及冠词。"""
    text = name.strip(_STRIP_CHARS)
    previous = None
    while previous != text:
        previous = text
        text = _FILLER.sub("", text, count=1)
        text = _ARTICLE.sub("", text, count=1).strip(_STRIP_CHARS)
    if len(text) > MAX_NAME_LENGTH:
        text = text[:MAX_NAME_LENGTH].rstrip()
    return text[:1].upper() + text[1:]


def parse_confidence(text: Any) -> float | None:
    """从数字或字符串中取置信度。带 % 或大于 1 且不超过 100 时按百分比处理。"""
    if isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        value = float(text)
    elif isinstance(text, str):
        found = _NUMBER.search(text)
        if not found:
            return None
        value = float(found.group(1).replace(",", "."))
        if found.group(2):
            value /= 100
    else:
        return None
    # 百分制；1~2 之间视为模型过度自信，交给夹取
    if 2 < value <= 100:
        value /= 100
    return value


def _as_list(value: Any, splitter: re.Pattern[str] = _ITEM_SPLIT) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = splitter.split(value)
    elif isinstance(value, (list, tuple, set)):
        items = [str(v) for v in value if v is not None]
    else:
        items = [str(value)]
    cleaned = [item.strip(_STRIP_CHARS)[:MAX_ITEM_LENGTH] for item in items]
    return [item for item in cleaned if item]


def _as_text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def _clean_field(value: str) -> str:
    value = value.strip(_STRIP_CHARS)
    value = _FIELD_LABEL.sub("", value)
    return value.strip(_STRIP_CHARS)


# ────────────────────── 解析器 ──────────────────────


class ResponseParser:
    """把模型原始文本变成 CanonicalRecord。"""

    def parse(self, raw: str) -> ParseResult:
        text = (raw or "").strip()
        if not text:
            raise AnalysisError(ErrorKind.UNPARSABLE_RESPONSE, "Empty response from AI model")

        tiers = (
            (ParseTier.STRICT, self._decode_strict),
            (ParseTier.DELIMITED, self._decode_delimited),
            (ParseTier.HEURISTIC, self._decode_heuristic),
        )
        for tier, decode in tiers:
            fields = decode(text)
            if fields is None:
                logger.debug("Parser tier %s rejected response", tier.value)
                continue
            try:
                record = self.normalize(fields)
            except ValidationError as e:
                logger.debug("Parser tier %s failed validation: %s", tier.value, e)
                continue
            logger.info("Parsed response via %s tier: %s (%s)", tier.value, record.name, record.type.value)
            return ParseResult(record=record, tier=tier)

        raise AnalysisError(
            ErrorKind.UNPARSABLE_RESPONSE, "Could not interpret the AI model response"
        )

    def normalize(self, fields: ParsedFields) -> CanonicalRecord:
        tool_type = fields.type_hint or resolve_type(fields.type_text, fields.name)
        profile = TYPE_PROFILES[tool_type]
        name = strip_filler(fields.name or "") or profile.label
        precision = match_precision(fields.precision_text) or profile.precision
        return CanonicalRecord(
            name=name,
            type=tool_type,
            confidence=fields.confidence,
            details=ToolDetails(
                features=fields.features or list(profile.features),
                materials=fields.materials or list(DEFAULT_MATERIALS),
                usage=fields.usage or list(profile.usage),
                precision=precision,
            ),
        )

    # ── tier 1 ──

    def _load_object(self, text: str) -> dict[str, Any] | None:
        fenced = _FENCE.search(text)
        candidates = [fenced.group(1)] if fenced else []
        candidates.append(text)
        start, end = text.find("{"), text.rfind("}")
        if 0 <= start < end:
            candidates.append(text[start : end + 1])

        for candidate in candidates:
            try:
                data = json.loads(candidate)
            except (json.JSONDecodeError, ValueError):
                continue
            if isinstance(data, dict):
                return data
        return None

    def _decode_strict(self, text: str) -> ParsedFields | None:
        data = self._load_object(text)
        if data is None:
            return None
        name = _as_text(data.get("name"))
        type_text = _as_text(data.get("type"))
        if not name or not type_text:
            return None

        details = data.get("details") if isinstance(data.get("details"), dict) else {}

        def pick(key: str) -> Any:
            value = details.get(key)
            return value if value is not None else data.get(key)

        return ParsedFields(
            name=name,
            type_text=type_text,
            materials=match_materials(" , ".join(_as_list(pick("materials"), _LIST_SPLIT))),
            confidence=parse_confidence(data.get("confidence")),
            features=_as_list(pick("features")),
            usage=_as_list(pick("usage")),
            precision_text=_as_text(pick("precision")),
        )

    # ── tier 2 ──

    def _decode_delimited(self, text: str) -> ParsedFields | None:
        line = max(text.splitlines(), key=lambda l: l.count(DELIMITER))
        if DELIMITER not in line:
            return None
        parts = [_clean_field(p) for p in line.split(DELIMITER)]
        parts = (parts + [""] * 7)[:7]
        if sum(1 for p in parts if p) < MIN_DELIMITED_FIELDS:
            return None

        name, type_text, materials, confidence, features, usage, precision = parts
        return ParsedFields(
            name=name or None,
            type_text=type_text or None,
            materials=match_materials(materials),
            confidence=parse_confidence(confidence) if confidence else None,
            features=_as_list(features),
            usage=_as_list(usage),
            precision_text=precision or None,
        )

    # ── tier 3 ──

    def _decode_heuristic(self, text: str) -> ParsedFields | None:
        found = match_type(text)
        materials = match_materials(text)
        if found is None and not materials:
            return None

        tool_type = found.type if found else ToolType.HAND
        confidence = None
        stated = _CONFIDENCE_IN_TEXT.search(text)
        if stated:
            confidence = parse_confidence(stated.group(1) + (stated.group(2) or ""))
        return ParsedFields(
            name=found.keyword if found and found.specific else None,
            type_hint=tool_type,
            materials=materials,
            confidence=confidence,
        )
