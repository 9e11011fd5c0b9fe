from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class CalibrationConfig:
    """
    Root-finder and execution settings shared by every stage of a run.

    - root_tolerance: both max|F(x)| and max|step| must fall below it.
    - max_iterations: Newton iteration cap per stage.
    - max_workers: None or 1 visits instruments sequentially; larger values
      fan the instrument visitation of one iteration out to a thread pool.
    """
    root_tolerance: float = 1e-10
    max_iterations: int = 100
    max_workers: Optional[int] = None

    def __post_init__(self):
        if not (self.root_tolerance > 0.0):
            raise ValueError("root_tolerance must be positive")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError("max_workers must be positive when given")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "CalibrationConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown calibration settings: {unknown}")
        return cls(**dict(values))
