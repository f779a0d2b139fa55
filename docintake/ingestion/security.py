"""
Text, metadata and base64 scanning for XSS / injection patterns.

Used by the content validator for text uploads and available to callers
that accept free-form fields (descriptions, vendor names, metadata maps).
Every function returns a ``SecurityScanResult``; nothing here raises.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any

from docintake.ingestion.schemas import SecurityErrorCode, SecurityIssue, SecurityScanResult

logger = logging.getLogger(__name__)

_MAX_REPORTED_MATCHES = 5

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]*={0,2}$")
_DATA_URL_PREFIX_RE = re.compile(r"^data:[^;]+;base64,")

_SCRIPT_BLOCK = r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>"

XSS_PATTERNS = [
    re.compile(_SCRIPT_BLOCK, re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe\b[^>]*>", re.IGNORECASE),
    re.compile(r"<object\b[^>]*>", re.IGNORECASE),
    re.compile(r"<embed\b[^>]*>", re.IGNORECASE),
    re.compile(r"<link\b[^>]*>", re.IGNORECASE),
    re.compile(r"<meta\b[^>]*>", re.IGNORECASE),
    re.compile(r"expression\s*\(", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"data:text/html", re.IGNORECASE),
]

INJECTION_PATTERNS = [
    re.compile(r"('|\\'|;|\\;|/\*|\*/|--)"),
    re.compile(r"\b(union|select|insert|update|delete|drop|create|alter|exec|execute)\b", re.IGNORECASE),
    re.compile(r"\b(or|and)\b.*[=<>]", re.IGNORECASE),
    re.compile(r"\b(eval|function|settimeout|setinterval)\s*\(", re.IGNORECASE),
]

SUSPICIOUS_CONTENT = [
    "javascript:",
    "vbscript:",
    "data:text/html",
    "<script",
    "</script>",
    "eval(",
    "function(",
    "settimeout(",
    "setinterval(",
    "document.cookie",
    "document.write",
    "window.location",
    "innerhtml",
    "outerhtml",
]

SUSPICIOUS_METADATA_KEYS = [
    "script", "javascript", "vbscript", "onload", "onerror", "onclick",
    "eval", "function", "constructor", "prototype", "__proto__",
]


def detect_suspicious_content(content: str) -> list[str]:
    """Return every suspicious marker found in *content* (case-insensitive)."""
    lowered = content.lower()
    return [marker for marker in SUSPICIOUS_CONTENT if marker in lowered]


def sanitize_text(text: str) -> str:
    """Strip script blocks, script protocols, event handlers and active tags."""
    text = re.sub(_SCRIPT_BLOCK, "", text, flags=re.IGNORECASE)
    text = re.sub(r"(javascript|vbscript):", "", text, flags=re.IGNORECASE)
    text = re.sub(r"on\w+\s*=", "", text, flags=re.IGNORECASE)
    text = re.sub(r"<(iframe|object|embed|link|meta)\b[^>]*>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"expression\s*\(", "", text, flags=re.IGNORECASE)
    text = re.sub(r"data:text/html[^\"']*", "", text, flags=re.IGNORECASE)
    return text


def sanitize_text_input(text: Any) -> SecurityScanResult:
    """Check *text* for XSS and injection patterns and return a cleaned copy."""
    if not isinstance(text, str):
        return SecurityScanResult(
            is_valid=False,
            errors=[SecurityIssue(
                code=SecurityErrorCode.XSS_DETECTED,
                message="Input must be a string",
                details={"received": type(text).__name__},
            )],
            sanitized_data="",
        )

    errors: list[SecurityIssue] = []
    for pattern in XSS_PATTERNS:
        matches = [m.group(0) for m in pattern.finditer(text)]
        if matches:
            errors.append(SecurityIssue(
                code=SecurityErrorCode.XSS_DETECTED,
                message="Potential XSS attack detected",
                details={"matches": matches[:_MAX_REPORTED_MATCHES]},
            ))
    for pattern in INJECTION_PATTERNS:
        matches = [m.group(0) for m in pattern.finditer(text)]
        if matches:
            errors.append(SecurityIssue(
                code=SecurityErrorCode.INJECTION_DETECTED,
                message="Potential injection attack detected",
                details={"matches": matches[:_MAX_REPORTED_MATCHES]},
            ))

    sanitized = sanitize_text(text)
    warnings = []
    if sanitized != text:
        warnings.append("Input was sanitized to remove potentially dangerous content")
    return SecurityScanResult(
        is_valid=not errors, errors=errors, warnings=warnings, sanitized_data=sanitized
    )


def validate_base64_data(data: Any) -> SecurityScanResult:
    """Validate a (possibly data-URL prefixed) base64 payload."""
    if not data or not isinstance(data, str):
        return SecurityScanResult(
            is_valid=False,
            errors=[SecurityIssue(
                code=SecurityErrorCode.INVALID_BASE64,
                message="Base64 data must be a non-empty string",
                details={"received": type(data).__name__},
            )],
        )

    payload = _DATA_URL_PREFIX_RE.sub("", data)
    errors: list[SecurityIssue] = []
    warnings: list[str] = []

    if not _BASE64_RE.match(payload):
        errors.append(SecurityIssue(
            code=SecurityErrorCode.INVALID_BASE64,
            message="Invalid base64 format detected",
            details={"invalid_characters": sorted(set(re.findall(r"[^A-Za-z0-9+/=]", payload)))},
        ))
    if len(payload) % 4 != 0:
        errors.append(SecurityIssue(
            code=SecurityErrorCode.INVALID_BASE64,
            message="Base64 string length must be multiple of 4",
            details={"length": len(payload), "remainder": len(payload) % 4},
        ))

    try:
        decoded = base64.b64decode(payload, validate=True).decode("latin-1")
    except (binascii.Error, ValueError) as exc:
        errors.append(SecurityIssue(
            code=SecurityErrorCode.INVALID_BASE64,
            message="Failed to decode base64 data",
            details={"error": str(exc)},
        ))
    else:
        found = detect_suspicious_content(decoded)
        if found:
            warnings.append(f"Potentially suspicious content detected: {', '.join(found)}")

    return SecurityScanResult(
        is_valid=not errors, errors=errors, warnings=warnings, sanitized_data=payload
    )


def validate_metadata(metadata: Any) -> SecurityScanResult:
    """Drop suspicious keys and complex values; sanitize string values.

    ``sanitized_data`` holds the cleaned mapping.
    """
    if not isinstance(metadata, dict):
        return SecurityScanResult(
            is_valid=False,
            errors=[SecurityIssue(
                code=SecurityErrorCode.SUSPICIOUS_METADATA,
                message="Metadata must be a valid object",
                details={"received": type(metadata).__name__},
            )],
            sanitized_data={},
        )

    errors: list[SecurityIssue] = []
    warnings: list[str] = []
    cleaned: dict[str, Any] = {}

    for key, value in metadata.items():
        lowered = str(key).lower()
        if any(s in lowered for s in SUSPICIOUS_METADATA_KEYS):
            errors.append(SecurityIssue(
                code=SecurityErrorCode.SUSPICIOUS_METADATA,
                message=f"Suspicious metadata key detected: {key}",
                details={"key": key},
            ))
            continue

        if isinstance(value, str):
            result = sanitize_text_input(value)
            if not result.is_valid:
                errors.extend(
                    issue.model_copy(update={"message": f"Metadata field '{key}': {issue.message}"})
                    for issue in result.errors
                )
            else:
                cleaned[key] = result.sanitized_data
                if result.warnings:
                    warnings.append(f"Metadata field '{key}' was sanitized")
        elif value is None or isinstance(value, (bool, int, float)):
            cleaned[key] = value
        else:
            warnings.append(
                f"Metadata field '{key}' with type '{type(value).__name__}' was removed for security"
            )

    return SecurityScanResult(
        is_valid=not errors, errors=errors, warnings=warnings, sanitized_data=cleaned
    )


def scan_content(content: str, content_type: str | None = None) -> SecurityScanResult:
    """Scan a text payload; text/* and JSON also get the XSS/injection checks."""
    errors: list[SecurityIssue] = []
    warnings: list[str] = []

    found = detect_suspicious_content(content)
    if found:
        errors.append(SecurityIssue(
            code=SecurityErrorCode.MALICIOUS_CONTENT,
            message="Suspicious content patterns detected",
            details={"patterns": found},
        ))

    if content_type and (content_type.startswith("text/") or content_type == "application/json"):
        text_result = sanitize_text_input(content)
        errors.extend(text_result.errors)
        warnings.extend(text_result.warnings)

    if errors:
        logger.debug("Content scan flagged %d issue(s).", len(errors))
    return SecurityScanResult(
        is_valid=not errors, errors=errors, warnings=warnings, sanitized_data=content
    )
