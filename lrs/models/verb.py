from __future__ import annotations

from dataclasses import dataclass
from typing import Any

CATEGORIES = ("completion", "progress", "interaction", "unknown")


@dataclass(frozen=True, slots=True)
class VerbConfig:
    """Semantic meaning of a verb: what derived behavior it drives."""

    category: str  # completion|progress|interaction|unknown
    action: str  # mark_completed|mark_passed|mark_failed|mark_started|track_*|...
    description: str = ""
    is_custom: bool = False
    is_detected: bool = False  # matched by keyword, not by table entry
    is_unknown: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "category": self.category,
            "action": self.action,
            "description": self.description,
        }
        if self.is_custom:
            out["isCustom"] = True
        if self.is_detected:
            out["isDetected"] = True
        if self.is_unknown:
            out["isUnknown"] = True
        return out

    @staticmethod
    def from_dict(data: dict[str, Any], *, is_custom: bool = False) -> VerbConfig:
        return VerbConfig(
            category=str(data.get("category") or "unknown"),
            action=str(data.get("action") or "track_verb"),
            description=str(data.get("description") or ""),
            is_custom=is_custom or bool(data.get("isCustom", False)),
        )


@dataclass(frozen=True, slots=True)
class VerbUsage:
    count: int
    last_used: str | None
