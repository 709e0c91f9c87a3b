from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator

from .exceptions import InvalidArgument


class Mode(str, Enum):
    """Inference mode: which factors are latent and which are held fixed."""
    TRAIN = "train"
    TRAIN_FIXED = "train_fixed"
    RECONSTRUCT = "reconstruct"


def default_convergence_criterion(evidence_ratio: float, tolerance: float) -> bool:
    return 1 - evidence_ratio < tolerance


def _default_max_iterations() -> Dict[Mode, int]:
    return {mode: 100 for mode in Mode}


class BDLParameters(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    mode: Mode = Mode.TRAIN
    sparse: bool = True
    norm_constraints: bool = False
    include_bias: bool = False
    missing_data: bool = False
    non_negative: bool = False
    hierarchical: bool = False      # latent dictionary means
    warm_start: bool = False        # initialise a latent dictionary from priors.dictionary
    tolerance: float = Field(1e-3, gt=0.0)
    max_iterations: Dict[Mode, PositiveInt] = Field(default_factory=_default_max_iterations)
    show_progress: bool = True
    seed: Optional[int] = 0
    convergence_criterion: Callable[[float, float], bool] = Field(
        default=default_convergence_criterion, exclude=True
    )

    @field_validator("max_iterations")
    @classmethod
    def _fill_missing_modes(cls, value: Dict[Mode, int]) -> Dict[Mode, int]:
        filled = _default_max_iterations()
        filled.update(value)
        return filled

    @property
    def iterations(self) -> int:
        """Maximum number of sweeps for the configured mode."""
        return self.max_iterations[self.mode]

    def for_mode(self, mode: Mode) -> "BDLParameters":
        """Copy of these parameters with a different mode."""
        return self.model_copy(update={"mode": Mode(mode)})

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BDLParameters":
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise InvalidArgument(f"Invalid BDL parameters: {e}") from e

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "BDLParameters":
        """
        Load parameters from a YAML (or JSON, which is valid YAML) file.

        Raises:
            FileNotFoundError: If the file does not exist
            InvalidArgument: If the file content does not validate
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        if not isinstance(raw, dict):
            raise InvalidArgument(f"Config file {path} must contain a mapping, got {type(raw).__name__}")
        return cls.from_dict(raw)


SCHEMA_VERSION = 1


def make_metadata(parameters: BDLParameters, marginals, extra=None):
    meta = {
        "schema_version": SCHEMA_VERSION,
        "parameters": parameters.to_dict(),
        "shapes": {},
    }
    for name in ("coefficients", "dictionary", "signals"):
        value = getattr(marginals, name, None)
        if value is not None:
            meta["shapes"][name] = list(value.shape)
    if marginals.evidence is not None:
        meta["log_evidence"] = float(marginals.evidence.log_odds)
    if marginals.noise_precision is not None:
        meta["noise_precision"] = float(marginals.noise_precision.mean)
    if marginals.coefficients is not None:
        meta["average_sparsity"] = float(marginals.average_sparsity())
    if marginals.monitor is not None:
        meta["iterations"] = marginals.monitor.iterations
        meta["state"] = marginals.monitor.state.value
    if extra: meta.update(extra)
    return meta
