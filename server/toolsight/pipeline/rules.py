"""分类规则表 — 类型关键词（按优先级）、材料关键词、各类型默认值。

关键词按词首匹配（"drill" 能匹配 "drills"，但不会匹配 "undrilled"），
俄文条目写成词干，覆盖模型用俄语作答的情况。
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from toolsight.models import Precision, ToolType

# 优先级从高到低：文本同时命中多类时取第一个
TYPE_RULES: list[tuple[ToolType, tuple[str, ...]]] = [
    (
        ToolType.POWER,
        (
            "power tool", "electric", "cordless", "drill", "impact driver",
            "angle grinder", "grinder", "rotary hammer", "heat gun", "sander",
            "router", "электр", "дрел", "шуруповерт", "болгарк", "перфоратор", "фен",
        ),
    ),
    (
        ToolType.MEASURING,
        (
            "measuring", "tape measure", "ruler", "spirit level", "laser level", "caliper",
            "micrometer", "protractor", "gauge", "измерит", "рулетк", "линейк",
            "строительный уровень", "угольник", "метр", "калибр", "штангенциркул",
        ),
    ),
    (
        ToolType.CUTTING,
        (
            "cutting", "knife", "scissors", "saw", "hacksaw", "jigsaw", "cutter",
            "utility knife", "chisel", "file", "shears", "режущ", "нож", "ножниц", "пил",
            "лобзик", "резак", "напильник", "ножовк",
        ),
    ),
    (
        ToolType.STRIKING,
        (
            "striking", "hammer", "mallet", "sledgehammer", "sledge", "pickaxe",
            "crowbar", "pry bar", "ударн", "молот", "кувалд", "зубил", "кирк", "гвоздодер",
        ),
    ),
    (
        ToolType.CLAMPING,
        (
            "clamping", "pliers", "vise", "vice", "clamp", "tongs",
            "wrench", "spanner", "плоскогубц", "тиски", "струбцин", "зажим",
            "клещ", "гаечн", "пассатиж",
        ),
    ),
    (
        ToolType.HAND,
        (
            "hand tool", "manual", "screwdriver", "hex key", "allen key",
            "awl", "ручн", "отвертк", "ключ",
        ),
    ),
]

# 类型字段的直接别名（整串匹配，优先于关键词规则）
TYPE_ALIASES: dict[str, ToolType] = {
    "hand": ToolType.HAND,
    "manual": ToolType.HAND,
    "ручной": ToolType.HAND,
    "power": ToolType.POWER,
    "electric": ToolType.POWER,
    "электро": ToolType.POWER,
    "электрический": ToolType.POWER,
    "measuring": ToolType.MEASURING,
    "measurement": ToolType.MEASURING,
    "измерительный": ToolType.MEASURING,
    "cutting": ToolType.CUTTING,
    "режущий": ToolType.CUTTING,
    "striking": ToolType.STRIKING,
    "impact": ToolType.STRIKING,
    "percussion": ToolType.STRIKING,
    "ударный": ToolType.STRIKING,
    "clamping": ToolType.CLAMPING,
    "gripping": ToolType.CLAMPING,
    "зажимной": ToolType.CLAMPING,
}

# 材料彼此独立检测，一条文本可命中多个
MATERIAL_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("Steel", ("steel", "stainless", "metal", "сталь", "стальн", "металл")),
    ("Chrome vanadium", ("chrome vanadium", "chrome-vanadium", "cr-v", "хром")),
    ("Aluminum", ("aluminum", "aluminium", "алюмини")),
    ("Cast iron", ("cast iron", "чугун")),
    ("Titanium", ("titanium", "титан")),
    ("Carbide", ("carbide", "tungsten", "твердосплав")),
    ("Brass", ("brass", "латун")),
    ("Copper", ("copper", "медь", "медн")),
    ("Plastic", ("plastic", "polymer", "nylon", "пластик", "пластмасс")),
    ("Rubber", ("rubber", "резин", "прорезинен")),
    ("Wood", ("wood", "wooden", "дерев")),
    ("Fiberglass", ("fiberglass", "fibreglass", "стеклопластик")),
    ("Carbon fiber", ("carbon fiber", "carbon fibre", "углепластик")),
]

PRECISION_RULES: list[tuple[Precision, tuple[str, ...]]] = [
    (Precision.HIGH, ("high", "precise", "precision", "высок")),
    (Precision.LOW, ("low", "rough", "низк")),
    (Precision.MEDIUM, ("medium", "moderate", "good", "average", "средн", "хорош")),
    (Precision.BASIC, ("basic", "базов")),
]


@dataclass(frozen=True)
class TypeProfile:
    label: str
    features: tuple[str, ...]
    usage: tuple[str, ...]
    precision: Precision


TYPE_PROFILES: dict[ToolType, TypeProfile] = {
    ToolType.HAND: TypeProfile(
        "Hand tool", ("Manual operation", "Ergonomic grip"), ("Assembly", "Repair"), Precision.MEDIUM
    ),
    ToolType.POWER: TypeProfile(
        "Power tool", ("Electric drive", "Variable speed"), ("Drilling", "Fastening"), Precision.MEDIUM
    ),
    ToolType.MEASURING: TypeProfile(
        "Measuring tool", ("Graduated scale",), ("Measuring", "Marking out"), Precision.HIGH
    ),
    ToolType.CUTTING: TypeProfile(
        "Cutting tool", ("Sharpened edge",), ("Cutting", "Trimming"), Precision.MEDIUM
    ),
    ToolType.STRIKING: TypeProfile(
        "Striking tool", ("Weighted head",), ("Driving nails", "Demolition"), Precision.LOW
    ),
    ToolType.CLAMPING: TypeProfile(
        "Clamping tool", ("Adjustable jaws",), ("Gripping", "Holding workpieces"), Precision.MEDIUM
    ),
}


def _compile(keywords: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(k) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives})\w*", re.IGNORECASE)


_TYPE_PATTERNS = [(tool_type, _compile(keywords)) for tool_type, keywords in TYPE_RULES]
_MATERIAL_PATTERNS = [(material, _compile(keywords)) for material, keywords in MATERIAL_RULES]
_PRECISION_PATTERNS = [(precision, _compile(keywords)) for precision, keywords in PRECISION_RULES]

# 只描述类别、不能当作工具名的词
_GENERIC = _compile(
    (
        "power tool", "electric", "cordless", "measuring", "cutting", "striking",
        "clamping", "hand tool", "manual", "электр", "ручн", "измерит", "режущ", "ударн",
    )
)


@dataclass(frozen=True)
class TypeMatch:
    type: ToolType
    keyword: str
    specific: bool


def match_type(text: str) -> TypeMatch | None:
    """按优先级顺序扫描，返回第一个命中的类型及命中的原词。

    同一类型命中多个词时，优先返回具体工具名（"cordless drill" → "drill"）。
    """
    if not text:
        return None
    for tool_type, pattern in _TYPE_PATTERNS:
        words = [m.group(0) for m in pattern.finditer(text)]
        if not words:
            continue
        specific = [w for w in words if not _GENERIC.match(w)]
        if specific:
            return TypeMatch(tool_type, specific[0], specific=True)
        return TypeMatch(tool_type, words[0], specific=False)
    return None


def match_materials(text: str) -> list[str]:
    if not text:
        return []
    return [material for material, pattern in _MATERIAL_PATTERNS if pattern.search(text)]


def match_precision(text: str | None) -> Precision | None:
    if not text:
        return None
    for precision, pattern in _PRECISION_PATTERNS:
        if pattern.search(text):
            return precision
    return None


def resolve_type(type_text: str | None, name: str | None = None) -> ToolType:
    """类型字段 → ToolType：别名 → 类型字段关键词 → 名称关键词 → 默认 HAND。"""
    if type_text:
        key = type_text.strip().lower()
        key = re.sub(r"[\s_-]*tools?$", "", key)
        if key in TYPE_ALIASES:
            return TYPE_ALIASES[key]
        found = match_type(type_text)
        if found:
            return found.type
    if name:
        found = match_type(name)
        if found:
            return found.type
    return ToolType.HAND
