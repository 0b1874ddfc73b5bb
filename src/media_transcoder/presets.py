"""
Output preset resolution.

Each caller output entry is layered onto its named preset the way JSON Merge
Patch layers a document: the preset supplies defaults and every field the
caller set explicitly wins. Entries that resolve to an unsupported container
are dropped; an empty result is the caller's problem to report.
"""

import copy
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import OutputRequest, OutputSpec

SUPPORTED_FORMATS = frozenset({"mp4", "webm"})

DEFAULT_VIDEO_CODEC = {"mp4": "libx264", "webm": "libvpx-vp9"}
DEFAULT_AUDIO_CODEC = {"mp4": "aac", "webm": "libopus"}

MIME_TYPES = {"mp4": "video/mp4", "webm": "video/webm"}


def apply_overrides(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply overrides to defaults using JSON Merge Patch semantics (RFC 7396).

    Args:
        defaults: The default field values
        overrides: The overrides to apply

    Returns:
        Merged dict (defaults are not mutated)
    """
    result = copy.deepcopy(defaults)

    for key, override_value in overrides.items():
        if override_value is None:
            result.pop(key, None)
        elif isinstance(override_value, dict) and isinstance(result.get(key), dict):
            result[key] = apply_overrides(result[key], override_value)
        else:
            result[key] = override_value

    return result


def mime_type_for(fmt: str) -> str:
    return MIME_TYPES.get(fmt, "application/octet-stream")


class PresetTable:
    """Read-only index of named output presets, built once at start-up."""

    def __init__(self, presets: Iterable[OutputSpec], default_names: Iterable[str] = ()):
        self._presets: Dict[str, OutputSpec] = {p.id: p for p in presets}
        self._default_names = tuple(default_names)

    def __contains__(self, name: str) -> bool:
        return name in self._presets

    def __len__(self) -> int:
        return len(self._presets)

    def get(self, name: str) -> Optional[OutputSpec]:
        return self._presets.get(name)

    def all(self) -> List[OutputSpec]:
        return list(self._presets.values())

    def defaults(self) -> List[OutputSpec]:
        return [self._presets[name] for name in self._default_names if name in self._presets]

    @classmethod
    def from_config(cls, config) -> "PresetTable":
        return cls(config.presets, config.default_presets)


def resolve_output(
    request: OutputRequest, presets: PresetTable, index: int = 0
) -> Optional[OutputSpec]:
    """Resolve one caller entry into an OutputSpec.

    Returns None when the entry has no usable container format (unknown
    preset and no explicit format, or a format outside SUPPORTED_FORMATS).
    """
    explicit = request.explicit_fields()
    preset = presets.get(request.preset) if request.preset else None

    if preset is not None:
        merged = apply_overrides(preset.model_dump(), explicit)
        merged["id"] = preset.id
    else:
        fmt = (explicit.get("format") or "").lower()
        if not fmt:
            return None
        merged = dict(explicit)
        merged["format"] = fmt
        merged.setdefault("video_codec", DEFAULT_VIDEO_CODEC.get(fmt, "libx264"))
        merged.setdefault("audio_codec", DEFAULT_AUDIO_CODEC.get(fmt, "aac"))
        merged["id"] = request.preset or f"{fmt}_{index}"

    merged["format"] = merged["format"].lower()
    if merged["format"] not in SUPPORTED_FORMATS:
        return None

    return OutputSpec(**merged)


def resolve_outputs(
    requests: Optional[List[Any]], presets: PresetTable
) -> List[OutputSpec]:
    """Resolve caller output entries, falling back to the default presets.

    Args:
        requests: OutputRequest instances or raw mappings; None or empty
            selects the table's default presets
        presets: Preset table

    Returns:
        Resolved specs in request order, unsupported entries dropped
    """
    if not requests:
        return presets.defaults()

    resolved = []
    for index, raw in enumerate(requests):
        request = raw if isinstance(raw, OutputRequest) else OutputRequest.model_validate(
            dict(raw) if isinstance(raw, Mapping) else raw
        )
        spec = resolve_output(request, presets, index)
        if spec is not None:
            resolved.append(spec)
    return resolved
