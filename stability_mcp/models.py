"""Plain data types shared by the client, resource stores and tools."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class Operation(str, Enum):
    """Kinds of work the provider can perform."""
    GENERATE = "generate"
    REMOVE_BACKGROUND = "remove-background"
    UPSCALE_CREATIVE = "upscale-creative"
    CONTROL_STRUCTURE = "control-structure"


@dataclass(frozen=True)
class GenerationRequest:
    """Parameters for one provider call. Immutable once built."""
    operation: Operation
    prompt: str = ""
    negative_prompt: Optional[str] = None
    seed: Optional[int] = None
    output_format: str = "png"
    creativity: Optional[float] = None
    control_strength: Optional[float] = None
    aspect_ratio: Optional[str] = None
    model: Optional[str] = None
    cfg_scale: Optional[float] = None
    style_preset: Optional[str] = None
    source_image: Optional[str] = None


@dataclass(frozen=True)
class JobHandle:
    """Provider-side asynchronous job awaiting completion."""
    id: str
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class GenerationResult:
    """Decoded image returned by the provider."""
    buffer: bytes
    output_format: str

    @property
    def mime_type(self) -> str:
        return f"image/{self.output_format}"


@dataclass(frozen=True)
class ResourceContext:
    """Per-request caller data threaded from a transport into the store."""
    requestor_ip_address: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StoredResource:
    """Descriptor of a resource held by a store."""
    uri: str
    name: str
    mime_type: str


@dataclass(frozen=True)
class ResourceContents:
    """Bytes of a resource read back from a store."""
    uri: str
    mime_type: str
    data: bytes


@dataclass
class MetadataRecord:
    """Diagnostic sidecar written beside a generated image."""
    request_params: Dict[str, Any]
    success_info: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def to_json(self) -> str:
        payload = {
            "requestParams": self.request_params,
            "successInfo": self.success_info,
            "error": self.error,
            "timestamp": self.timestamp,
        }
        return json.dumps(payload, indent=2)
