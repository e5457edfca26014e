from __future__ import annotations

import json
import re
from typing import Any, Callable

import json_repair
from loguru import logger

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?|```\s*\n?", re.IGNORECASE)
# Hebrew, Arabic, Syriac, Thaana, NKo, Samaritan, Arabic supplements and presentation forms.
_RTL_RE = re.compile("[\u0590-\u08FF\uFB1D-\uFDFF\uFE70-\uFEFC]")

RLE = "\u202B"
PDF = "\u202C"


class ResponseValidationError(ValueError):
    pass


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def apply_text_direction(text: str) -> str:
    """Wrap right-to-left text in explicit directional embedding marks."""
    if _RTL_RE.search(text) and not (text.startswith(RLE) and text.endswith(PDF)):
        return f"{RLE}{text}{PDF}"
    return text


def parse_response(raw_text: str) -> list[Any]:
    """Repair and parse the model output; raise ResponseValidationError if it is not a list."""
    cleaned = strip_code_fences(raw_text)
    if not cleaned:
        raise ResponseValidationError("Empty response (模型返回为空)。")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        data = json_repair.loads(cleaned)
    if not isinstance(data, list):
        raise ResponseValidationError(f"Response is not an array (got {type(data).__name__})。")
    return data


def _has_fields(item: Any) -> bool:
    # index may come back as a number; content must be non-blank text.
    if not isinstance(item, dict):
        return False
    index = item.get("index")
    content = item.get("content")
    if not isinstance(index, (str, int)) or isinstance(index, bool) or not str(index).strip():
        return False
    return isinstance(content, str) and bool(content.strip())


def validate(
    raw_text: str,
    sent_batch: list[dict[str, str]],
    warn: Callable[[str], None] | None = None,
) -> list[dict[str, str]] | None:
    """Return validated `{index, content}` items in response order, or None if the batch failed."""
    warn = warn or logger.warning
    try:
        data = parse_response(raw_text)
    except ResponseValidationError as exc:
        warn(f"响应解析失败: {exc}")
        return None

    sent_ids = {str(item["index"]) for item in sent_batch}
    validated: list[dict[str, str]] = []
    for item in data:
        if not _has_fields(item):
            warn(f"翻译条目缺少字段，已丢弃: {json.dumps(item, ensure_ascii=False)[:200]}")
            continue
        index = str(item["index"]).strip()
        if index not in sent_ids:
            warn(f"索引 {index} 不在本批次中，已丢弃")
            continue
        validated.append({"index": index, "content": apply_text_direction(item["content"])})

    if not validated:
        warn("响应中没有有效的翻译条目")
        return None
    return validated
