"""
beacon/privacy.py — 隐私模式

开启后：userId 与敏感字段替换为加盐摘要，元素文本丢弃，mailto/tel 链接只保留摘要。
摘要稳定（同一输入 + 同一盐 = 同一输出），服务端仍可按用户聚合。
"""

import hashlib
from typing import Any, Dict, Optional

SENSITIVE_FIELDS = ("userId", "email", "name", "ip", "userAgent")


def pseudonymize(value: Any, salt: str = "") -> str:
    digest = hashlib.sha256(f"{salt}:{value}".encode("utf-8")).hexdigest()
    return f"anon_{digest[:16]}"


def pseudonymize_user(user_id: Optional[str], salt: str = "") -> Optional[str]:
    """调用方只传原始 userId；不按前缀猜测是否已处理过，形如 anon_ 的真实 id 同样会被摘要。"""
    if not user_id:
        return None
    return pseudonymize(user_id, salt)


def anonymize_fields(data: Dict[str, Any], salt: str = "") -> Dict[str, Any]:
    anonymized = dict(data or {})
    for field in SENSITIVE_FIELDS:
        if anonymized.get(field):
            anonymized[field] = pseudonymize(anonymized[field], salt)
    return anonymized


def scrub_payload(event_type: str, payload: Dict[str, Any], salt: str = "") -> Dict[str, Any]:
    """按事件类型清理 payload 中可能含个人信息的部分。"""
    cleaned = anonymize_fields(payload, salt)
    if event_type == "click" and isinstance(cleaned.get("element"), dict):
        element = dict(cleaned["element"])
        element["text"] = None
        attributes = dict(element.get("attributes") or {})
        href = str(attributes.get("href") or "")
        if href.startswith(("mailto:", "tel:")):
            attributes["href"] = pseudonymize(href, salt)
        if attributes.get("name"):
            attributes["name"] = pseudonymize(attributes["name"], salt)
        element["attributes"] = attributes
        cleaned["element"] = element
    return cleaned
