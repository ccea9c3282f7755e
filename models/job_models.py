"""Models describing one remote image generation job."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

MAX_SEED = 1_000_000


def new_seed() -> int:
    """Return a fresh random seed; seeds are never reused across calls."""
    return random.randrange(MAX_SEED)


@dataclass
class JobSpec:
    """Inputs for one generation run."""

    prompt: str
    seed: int = field(default_factory=new_seed)


@dataclass
class ProgressInfo:
    """One progress tick reported by the engine for a computation step."""

    value: float
    max: float
    node: Optional[str] = None

    @property
    def fraction(self) -> float:
        if not self.max:
            return 0.0
        return min(max(self.value / self.max, 0.0), 1.0)


@dataclass
class ImageDescriptor:
    """Engine-side location of a produced image."""

    filename: str
    subfolder: str = ""
    type: str = "output"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageDescriptor":
        return cls(
            filename=str(data["filename"]),
            subfolder=str(data.get("subfolder") or ""),
            type=str(data.get("type") or "output"),
        )


@dataclass
class JobHandle:
    """State of one in-flight remote job.

    `job_id` is only known once the engine accepts the job. `outcome` is set
    exactly once, by whichever terminal event arrives first.
    """

    spec: JobSpec
    job_id: Optional[str] = None
    started: bool = False
    cancel_requested: bool = False
    interrupt_sent: bool = False
    outcome: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.outcome is not None
