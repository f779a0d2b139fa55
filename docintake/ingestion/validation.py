"""
Content validation – reject or sanitize unsafe input before extraction.

``ContentValidator.validate`` runs, in order:

1. declared-type allow-list + extension check        → INVALID_TYPE
2. size limit for the declared type                  → FILE_TOO_LARGE
3. filename sanitization                             → ``sanitized_name``
4. filename safety (dangerous / double extensions)   → INVALID_NAME
5. image structure (Pillow decode, bounded size)     → INVALID_CONTENT
6. malware heuristics (``scan``)                     → MALWARE_DETECTED

Signature checks read the first 16 bytes and pattern scans the first 64 KB,
so validation cost does not grow with file size.
"""

from __future__ import annotations

import io
import logging
import math
import re
import warnings

from PIL import Image, UnidentifiedImageError

from docintake.ingestion.config import IngestSettings, ingest_settings
from docintake.ingestion.schemas import (
    ScanResult,
    SignatureCheck,
    SubmittedItem,
    ValidationErrorCode,
    ValidationIssue,
    ValidationOutcome,
)
from docintake.ingestion.security import detect_suspicious_content

logger = logging.getLogger(__name__)

# Declared type → accepted filename extensions
EXPECTED_EXTENSIONS: dict[str, frozenset[str]] = {
    "image/jpeg": frozenset({"jpg", "jpeg"}),
    "image/jpg": frozenset({"jpg", "jpeg"}),
    "image/png": frozenset({"png"}),
    "image/webp": frozenset({"webp"}),
    "application/pdf": frozenset({"pdf"}),
    "text/plain": frozenset({"txt"}),
    "text/csv": frozenset({"csv"}),
}

# Magic-byte prefixes (hex) → canonical type
SIGNATURES: dict[str, tuple[str, ...]] = {
    "image/jpeg": ("ffd8ff",),
    "image/png": ("89504e47",),
    "application/pdf": ("255044462d",),
    "image/webp": ("52494646",),
}

_TYPE_ALIASES = {"image/jpg": "image/jpeg"}

DANGEROUS_EXTENSIONS = frozenset({
    "exe", "bat", "cmd", "com", "pif", "scr", "vbs", "js", "jar", "app", "deb", "pkg", "dmg",
})

# Script-like substrings that make a filename unacceptable
_UNSAFE_NAME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"script", r"javascript", r"vbscript", r"onload", r"onerror", r"eval\(", r"document\.")
]

# Filename signals that feed the malware score
_SUSPICIOUS_NAME_PATTERNS = [
    re.compile(r"\$\{.*\}"),  # template injection
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"data:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"file:", re.IGNORECASE),
    re.compile(r"\.\.[\\/]"),  # path traversal
    re.compile(r"%2e%2e", re.IGNORECASE),  # encoded traversal
    re.compile(r"\x00"),
]

# Marker classes looked for inside image bytes; each class adds to the score once
_EMBEDDED_SCRIPT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"<script", r"javascript:", r"eval\(", r"document\.", r"window\.", r"alert\(")
]
_SERVER_SCRIPT_MARKERS = ("<?php", "<%", "#!/")

_SIGNATURE_WEIGHT = 0.3
_NAME_WEIGHT = 0.2
_SIZE_WEIGHT = 0.1
_IMAGE_THREAT_WEIGHT = 0.2


def _extension(name: str) -> str:
    return name.lower().rsplit(".", 1)[-1] if "." in name else ""


def format_bytes(size: int) -> str:
    """Human readable byte count, e.g. ``10 MB`` or ``1.5 KB``."""
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    exp = min(int(math.log(size, 1024)), len(units) - 1)
    value = round(size / 1024**exp, 2)
    return f"{value:g} {units[exp]}"


def sanitize_filename(name: str, max_length: int = 255) -> str:
    """Neutralise path traversal, dangerous and control characters.

    A name with nothing dangerous in it comes back unchanged.
    """
    name = name.replace("..", "_")
    name = re.sub(r"[/\\]", "_", name)
    name = re.sub(r'[<>:"|?*]', "_", name)
    name = re.sub(r"[\x00-\x1f\x80-\x9f]", "_", name)
    name = re.sub(r"^[.\s]+", "", name)
    name = re.sub(r"[.\s]+$", "", name)
    return name[:max_length] or "sanitized_file"


class ContentValidator:
    """Validates submitted files against the configured safety rules."""

    def __init__(self, settings: IngestSettings | None = None) -> None:
        self.settings = settings or ingest_settings

    # ── Entry point ──────────────────────────────────────────────────────

    def validate(self, item: SubmittedItem) -> ValidationOutcome:
        errors: list[ValidationIssue] = []
        warns: list[str] = []

        if not self.validate_type(item):
            errors.append(ValidationIssue(
                code=ValidationErrorCode.INVALID_TYPE,
                message=f"File type {item.mime_type} is not allowed",
                details={
                    "file_type": item.mime_type,
                    "extension": _extension(item.name),
                    "allowed_types": list(self.settings.allowed_types),
                },
            ))

        if not self.validate_size(item):
            max_size = self.max_size_for(item.mime_type)
            errors.append(ValidationIssue(
                code=ValidationErrorCode.FILE_TOO_LARGE,
                message=(
                    f"File size {format_bytes(item.size)} exceeds maximum "
                    f"{format_bytes(max_size)}"
                ),
                details={"file_size": item.size, "max_size": max_size},
            ))

        sanitized = sanitize_filename(item.name, self.settings.max_filename_length)
        if sanitized != item.name:
            warns.append(f'Filename sanitized from "{item.name}" to "{sanitized}"')

        if not self.validate_filename(item.name):
            errors.append(ValidationIssue(
                code=ValidationErrorCode.INVALID_NAME,
                message="Filename contains dangerous patterns or extensions",
                details={"original_name": item.name},
            ))

        if item.is_image and not self.validate_image_content(item):
            errors.append(ValidationIssue(
                code=ValidationErrorCode.INVALID_CONTENT,
                message="Image content validation failed - file may be corrupted or malicious",
            ))

        if item.mime_type.startswith("text/"):
            found = detect_suspicious_content(self._leading_text(item))
            if found:
                warns.append(f"Suspicious text content: {', '.join(found)}")

        scan = self.scan(item)
        if scan.is_malicious:
            errors.append(ValidationIssue(
                code=ValidationErrorCode.MALWARE_DETECTED,
                message=f"Malicious content detected: {', '.join(scan.threats)}",
                details={"threats": list(scan.threats), "confidence": scan.confidence},
            ))

        if errors:
            logger.info(
                "Validation failed for %s: %s",
                sanitized,
                ", ".join(e.code.value for e in errors),
            )
        return ValidationOutcome(
            is_valid=not errors,
            errors=tuple(errors),
            warnings=tuple(warns),
            sanitized_name=sanitized,
        )

    # ── Individual checks ────────────────────────────────────────────────

    def validate_type(self, item: SubmittedItem) -> bool:
        """Declared type must be allowed and match the filename extension."""
        if item.mime_type not in self.settings.allowed_types:
            return False
        return _extension(item.name) in EXPECTED_EXTENSIONS.get(item.mime_type, ())

    def validate_size(self, item: SubmittedItem) -> bool:
        return item.size <= self.max_size_for(item.mime_type)

    def max_size_for(self, mime_type: str) -> int:
        return self.settings.max_sizes.get(mime_type, self.settings.default_max_size)

    def validate_filename(self, name: str) -> bool:
        """Reject dangerous extensions, hidden double extensions and script-like names."""
        parts = name.lower().split(".")
        if _extension(name) in DANGEROUS_EXTENSIONS:
            return False
        if len(parts) > 2 and any(p in DANGEROUS_EXTENSIONS for p in parts[:-1]):
            return False
        return not any(p.search(name) for p in _UNSAFE_NAME_PATTERNS)

    def validate_image_content(self, item: SubmittedItem) -> bool:
        """The bytes must decode to an image with positive, bounded dimensions."""
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", Image.DecompressionBombWarning)
                with Image.open(io.BytesIO(item.content)) as img:
                    width, height = img.size
                    img.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError,
                Image.DecompressionBombWarning, OSError, SyntaxError, ValueError) as exc:
            logger.debug("Image decode failed for %s: %s", item.label, exc)
            return False

        limit = self.settings.max_image_dimension
        return (
            0 < width <= limit
            and 0 < height <= limit
            and width * height <= self.settings.max_image_pixels
        )

    def detect_signature(self, item: SubmittedItem) -> SignatureCheck:
        """Compare the magic bytes against the declared type."""
        head = item.content[: self.settings.signature_bytes].hex()
        declared = _TYPE_ALIASES.get(item.mime_type, item.mime_type)

        detected: str | None = None
        for mime_type, prefixes in SIGNATURES.items():
            if head.startswith(prefixes):
                detected = mime_type
                break

        if item.mime_type.startswith("text/"):
            # plain text has no signature to check
            return SignatureCheck(is_valid=True, detected_type=detected)
        return SignatureCheck(is_valid=detected is not None and detected == declared, detected_type=detected)

    # ── Malware heuristics ───────────────────────────────────────────────

    def scan(self, item: SubmittedItem) -> ScanResult:
        threats: list[str] = []
        confidence = 0.0

        if not self.detect_signature(item).is_valid:
            threats.append("Invalid file signature")
            confidence += _SIGNATURE_WEIGHT

        if any(p.search(item.name) for p in _SUSPICIOUS_NAME_PATTERNS):
            threats.append("Suspicious filename patterns")
            confidence += _NAME_WEIGHT

        if self._has_size_anomaly(item):
            threats.append("Unusual file size for type")
            confidence += _SIZE_WEIGHT

        if item.is_image:
            image_threats = self._scan_image_bytes(item)
            threats.extend(image_threats)
            confidence += len(image_threats) * _IMAGE_THREAT_WEIGHT

        confidence = min(round(confidence, 4), 1.0)
        return ScanResult(
            is_malicious=confidence > self.settings.malware_threshold,
            threats=tuple(threats),
            confidence=confidence,
        )

    def _has_size_anomaly(self, item: SubmittedItem) -> bool:
        binary = item.is_image or item.mime_type == "application/pdf"
        if binary and item.size < self.settings.min_plausible_size:
            return True
        return item.size > self.settings.max_plausible_size

    def _scan_image_bytes(self, item: SubmittedItem) -> list[str]:
        text = self._leading_text(item)
        threats: list[str] = []
        if any(p.search(text) for p in _EMBEDDED_SCRIPT_PATTERNS):
            threats.append("Embedded script detected")
        if any(marker in text for marker in _SERVER_SCRIPT_MARKERS):
            threats.append("Server-side script detected")
        return threats

    def _leading_text(self, item: SubmittedItem) -> str:
        return item.content[: self.settings.scan_bytes].decode("latin-1")
