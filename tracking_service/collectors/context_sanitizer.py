"""
Context Sanitizer
Completes and validates attacker-controlled request context and metadata
"""
import hashlib
import ipaddress
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

from pydantic import TypeAdapter, ValidationError

from tracking_service.core.config import Settings
from tracking_service.core.errors import InvalidEventError
from tracking_service.models.tracking import EventContext, MetadataValue

logger = logging.getLogger(__name__)

UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")
METADATA_KEY_MAX_LENGTH = 64

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_DATETIME = TypeAdapter(datetime)

# Free-text fields that are capped but otherwise passed through
_TEXT_FIELDS = (
    "title", "user_agent", "language", "screen_resolution", "device_fingerprint",
    "region", "city", "timezone",
) + UTM_FIELDS


def anonymize_ip(ip: str) -> str:
    """
    Mask an address before storage: IPv4 to its /24, IPv6 to its /48.

    Deterministic and one-way; the dropped bits are not recoverable.
    """
    addr = ipaddress.ip_address(ip)
    prefix = 24 if addr.version == 4 else 48
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False).network_address)


def derive_fingerprint(
    user_agent: str,
    screen_resolution: Optional[str],
    language: Optional[str],
    ip: str,
) -> str:
    """Quasi-identifier for abuse heuristics only, never a person identifier."""
    raw = "|".join([user_agent, screen_resolution or "", language or "", ip])
    return "fp_" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def extract_utm_params(url: str) -> Dict[str, str]:
    """Pull utm_* parameters out of a URL query string."""
    try:
        query = parse_qs(urlsplit(url).query)
    except ValueError:
        return {}
    return {name: query[name][0] for name in UTM_FIELDS if query.get(name)}


def _clean_text(value: str, max_length: int) -> str:
    return _CONTROL_CHARS.sub("", value).strip()[:max_length]


def _lookup(raw: Dict[str, Any], name: str) -> Any:
    """Accept both the camelCase wire key and the snake_case attribute name."""
    alias = EventContext.model_fields[name].alias or name
    if alias in raw:
        return raw[alias]
    return raw.get(name)


def _is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class ContextSanitizer:
    """
    Turns a partial, client-declared context into a validated EventContext.

    Every violated constraint is collected and reported together through a
    single InvalidEventError.
    """

    def __init__(
        self,
        metadata_max_bytes: int = 4096,
        metadata_max_keys: int = 50,
        field_max_length: int = 512,
        url_max_length: int = 2048,
        anonymize_ips: bool = False,
    ):
        self.metadata_max_bytes = metadata_max_bytes
        self.metadata_max_keys = metadata_max_keys
        self.field_max_length = field_max_length
        self.url_max_length = url_max_length
        self.anonymize_ips = anonymize_ips

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContextSanitizer":
        return cls(
            metadata_max_bytes=settings.METADATA_MAX_BYTES,
            metadata_max_keys=settings.METADATA_MAX_KEYS,
            field_max_length=settings.CONTEXT_FIELD_MAX_LENGTH,
            url_max_length=settings.URL_MAX_LENGTH,
            anonymize_ips=settings.ANONYMIZE_IP,
        )

    def complete_context(
        self,
        partial: Optional[Dict[str, Any]],
        request_ip: Optional[str],
        request_user_agent: Optional[str],
        received_at: datetime,
    ) -> Dict[str, Any]:
        """Fill ip, userAgent and timestamp from the surrounding request where absent."""
        completed = dict(partial or {})
        if _lookup(completed, "ip") in (None, "") and request_ip:
            completed["ip"] = request_ip
        if _lookup(completed, "user_agent") in (None, "") and request_user_agent:
            completed["userAgent"] = request_user_agent
        if _lookup(completed, "timestamp") in (None, ""):
            completed["timestamp"] = received_at
        return completed

    def sanitize(
        self,
        partial_context: Optional[Dict[str, Any]],
        metadata: Optional[Dict[str, Any]],
        request_ip: Optional[str],
        request_user_agent: Optional[str],
        received_at: datetime,
    ) -> Tuple[EventContext, Dict[str, MetadataValue]]:
        """Complete, validate and clean context and metadata in one pass."""
        completed = self.complete_context(partial_context, request_ip, request_user_agent, received_at)

        violations: List[Dict[str, str]] = []
        context = self._sanitize_context(completed, violations)
        clean_metadata = self._sanitize_metadata(metadata, violations)

        if violations:
            raise InvalidEventError(
                f"Event context rejected: {len(violations)} violation(s)",
                violations,
            )
        return context, clean_metadata

    def sanitize_context(self, raw: Dict[str, Any]) -> EventContext:
        violations: List[Dict[str, str]] = []
        context = self._sanitize_context(raw, violations)
        if violations:
            raise InvalidEventError(
                f"Event context rejected: {len(violations)} violation(s)",
                violations,
            )
        return context

    def sanitize_metadata(self, raw: Optional[Dict[str, Any]]) -> Dict[str, MetadataValue]:
        violations: List[Dict[str, str]] = []
        metadata = self._sanitize_metadata(raw, violations)
        if violations:
            raise InvalidEventError(
                f"Event metadata rejected: {len(violations)} violation(s)",
                violations,
            )
        return metadata

    def _sanitize_context(self, raw: Dict[str, Any], violations: List[Dict[str, str]]) -> Optional[EventContext]:
        fields: Dict[str, Any] = {}

        # Mandatory: url, userAgent, ip, timestamp
        url = _lookup(raw, "url")
        if url in (None, ""):
            violations.append({"field": "context.url", "message": "url is required"})
        elif not isinstance(url, str):
            violations.append({"field": "context.url", "message": "url must be a string"})
        elif len(url) > self.url_max_length:
            violations.append({
                "field": "context.url",
                "message": f"url exceeds {self.url_max_length} characters",
            })
        elif not _is_http_url(url.strip()):
            violations.append({"field": "context.url", "message": "url must be an absolute http(s) URL"})
        else:
            fields["url"] = _CONTROL_CHARS.sub("", url.strip())

        user_agent = _lookup(raw, "user_agent")
        if user_agent is None or (isinstance(user_agent, str) and not _clean_text(user_agent, self.field_max_length)):
            violations.append({"field": "context.userAgent", "message": "userAgent is required"})

        raw_ip = _lookup(raw, "ip")
        ip: Optional[str] = None
        if raw_ip in (None, ""):
            violations.append({"field": "context.ip", "message": "ip is required"})
        else:
            try:
                ip = str(ipaddress.ip_address(str(raw_ip).strip()))
            except ValueError:
                violations.append({"field": "context.ip", "message": "ip is not a valid address"})

        timestamp = _lookup(raw, "timestamp")
        try:
            parsed = _DATETIME.validate_python(timestamp)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            fields["timestamp"] = parsed.astimezone(timezone.utc)
        except ValidationError:
            violations.append({"field": "context.timestamp", "message": "timestamp is not a valid datetime"})

        for name in _TEXT_FIELDS:
            value = _lookup(raw, name)
            if value is None:
                continue
            if not isinstance(value, str):
                violations.append({
                    "field": f"context.{EventContext.model_fields[name].alias}",
                    "message": "must be a string",
                })
                continue
            cleaned = _clean_text(value, self.field_max_length)
            if cleaned:
                fields[name] = cleaned

        referrer = _lookup(raw, "referrer")
        if isinstance(referrer, str) and referrer.strip():
            referrer = referrer.strip()
            if len(referrer) <= self.url_max_length and _is_http_url(referrer):
                fields["referrer"] = _CONTROL_CHARS.sub("", referrer)
            else:
                logger.debug("Dropping non-http referrer")

        country = _lookup(raw, "country")
        if isinstance(country, str):
            country = country.strip().upper()
            if len(country) == 2 and country.isalpha():
                fields["country"] = country

        if violations:
            return None

        for name, value in extract_utm_params(fields["url"]).items():
            fields.setdefault(name, _clean_text(value, self.field_max_length))

        if "device_fingerprint" not in fields:
            fields["device_fingerprint"] = derive_fingerprint(
                fields["user_agent"],
                fields.get("screen_resolution"),
                fields.get("language"),
                ip,
            )

        fields["ip"] = anonymize_ip(ip) if self.anonymize_ips else ip
        return EventContext(**fields)

    def _sanitize_metadata(
        self,
        raw: Optional[Dict[str, Any]],
        violations: List[Dict[str, str]],
    ) -> Dict[str, MetadataValue]:
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            violations.append({"field": "metadata", "message": "metadata must be an object"})
            return {}

        if len(raw) > self.metadata_max_keys:
            violations.append({
                "field": "metadata",
                "message": f"metadata has {len(raw)} keys, at most {self.metadata_max_keys} allowed",
            })

        clean: Dict[str, MetadataValue] = {}
        for key, value in raw.items():
            if not isinstance(key, str) or not key or len(key) > METADATA_KEY_MAX_LENGTH:
                violations.append({
                    "field": f"metadata.{str(key)[:METADATA_KEY_MAX_LENGTH]}",
                    "message": f"keys must be 1-{METADATA_KEY_MAX_LENGTH} characters",
                })
                continue
            if isinstance(value, str):
                clean[key] = _CONTROL_CHARS.sub("", value)
            elif isinstance(value, bool) or isinstance(value, int):
                clean[key] = value
            elif isinstance(value, float):
                if not math.isfinite(value):
                    violations.append({"field": f"metadata.{key}", "message": "numbers must be finite"})
                    continue
                clean[key] = value
            else:
                violations.append({
                    "field": f"metadata.{key}",
                    "message": "values must be string, number or boolean",
                })

        encoded = json.dumps(clean, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
        if len(encoded) > self.metadata_max_bytes:
            violations.append({
                "field": "metadata",
                "message": f"metadata is {len(encoded)} bytes, at most {self.metadata_max_bytes} allowed",
            })
        return clean
