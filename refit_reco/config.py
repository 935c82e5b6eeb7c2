from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, FrozenSet, Iterable, Mapping, Tuple

import numpy as np
import orjson

from refit_reco.cluster_keys import TPC_LAYERS

__all__ = ["FitterConfig", "load_config", "dump_config"]

logger = logging.getLogger(__name__)

_ZERO_COV: Tuple[Tuple[float, float, float], ...] = ((0.0, 0.0, 0.0),) * 3


@dataclass(frozen=True)
class FitterConfig:
    r"""
    Immutable refit configuration.

    Attributes
    ----------
    disabled_layers : frozenset of int
        Layers whose clusters are excluded from the fit and later interpolated.
    fit_silicon_mms : bool
        Fit with silicon and micromegas clusters only. Use
        :meth:`with_fit_silicon_mms` to toggle it together with the TPC layers.
    use_micromegas : bool
        In silicon+micromegas mode, also require at least one micromegas cluster.
    primary_pid_guess : int
        PDG code of the particle hypothesis (``211`` is :math:`\pi^+`).
    fit_min_pt : float
        Candidates with seed :math:`p_T` not above this value (GeV/c) are not fitted.
    seed_momentum : float
        Magnitude of the seed momentum placeholder (GeV/c).
    seed_covariance : float
        Value of every entry of the seed 6x6 covariance.
    vertex : (3,) tuple
        Reference point for the DCA computation (cm).
    vertex_covariance : (3, 3) nested tuple
        Covariance of the reference point.
    """
    disabled_layers: FrozenSet[int] = field(default_factory=frozenset)
    fit_silicon_mms: bool = False
    use_micromegas: bool = True
    primary_pid_guess: int = 211
    fit_min_pt: float = 0.1
    seed_momentum: float = 100.0
    seed_covariance: float = 100.0
    vertex: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    vertex_covariance: Tuple[Tuple[float, float, float], ...] = _ZERO_COV

    def __post_init__(self) -> None:
        object.__setattr__(self, "disabled_layers", frozenset(int(l) for l in self.disabled_layers))
        object.__setattr__(self, "vertex", tuple(float(x) for x in self.vertex))
        cov = np.asarray(self.vertex_covariance, dtype=np.float64)
        if len(self.vertex) != 3 or cov.shape != (3, 3):
            raise ValueError("vertex must have 3 entries and vertex_covariance shape (3, 3)")
        object.__setattr__(self, "vertex_covariance", tuple(tuple(float(c) for c in row) for row in cov))

    @property
    def vertex_position(self) -> np.ndarray:
        return np.asarray(self.vertex, dtype=np.float64)

    @property
    def vertex_cov(self) -> np.ndarray:
        return np.asarray(self.vertex_covariance, dtype=np.float64)

    def is_disabled(self, layer: int) -> bool:
        return int(layer) in self.disabled_layers

    def with_disabled_layer(self, layer: int, disabled: bool = True) -> "FitterConfig":
        layers = set(self.disabled_layers)
        if disabled:
            layers.add(int(layer))
        else:
            layers.discard(int(layer))
        return replace(self, disabled_layers=frozenset(layers))

    def with_disabled_layers(self, layers: Iterable[int]) -> "FitterConfig":
        return replace(self, disabled_layers=frozenset(int(l) for l in layers))

    def cleared(self) -> "FitterConfig":
        """Copy with no disabled layer."""
        return replace(self, disabled_layers=frozenset())

    def with_fit_silicon_mms(self, value: bool) -> "FitterConfig":
        """Toggle silicon+micromegas fitting; TPC layers are disabled or re-enabled accordingly."""
        layers = set(self.disabled_layers)
        if value:
            layers.update(TPC_LAYERS)
        else:
            layers.difference_update(TPC_LAYERS)
        return replace(self, fit_silicon_mms=bool(value), disabled_layers=frozenset(layers))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FitterConfig":
        r"""
        Build a configuration from a plain mapping.

        ``fit_silicon_mms: true`` is applied through :meth:`with_fit_silicon_mms`,
        i.e. it also disables the TPC layers.

        Raises
        ------
        ValueError
            On unknown keys.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration key(s): {', '.join(unknown)}")
        kwargs = dict(data)
        silicon_mms = bool(kwargs.pop("fit_silicon_mms", False))
        if "disabled_layers" in kwargs:
            kwargs["disabled_layers"] = frozenset(kwargs["disabled_layers"])
        cfg = cls(**kwargs)
        return cfg.with_fit_silicon_mms(True) if silicon_mms else cfg

    def to_dict(self) -> dict:
        out = asdict(self)
        out["disabled_layers"] = sorted(self.disabled_layers)
        return out


def load_config(config_path: Path) -> FitterConfig:
    r"""
    Load a JSON configuration with :mod:`orjson`.

    The file may either hold the configuration keys at top level or under a
    ``"fitter"`` block.

    Raises
    ------
    ValueError
        If the file cannot be parsed or holds unknown keys.
    """
    config_path = Path(config_path)
    try:
        data = orjson.loads(config_path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ValueError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Failed to parse {config_path}: expected a JSON object")
    data = data.get("fitter", data)
    cfg = FitterConfig.from_dict(data)
    logger.debug("Loaded fitter config from %s: %s", config_path, cfg)
    return cfg


def dump_config(config: FitterConfig, config_path: Path) -> None:
    """Write ``config`` as indented JSON under a ``"fitter"`` block."""
    Path(config_path).write_bytes(
        orjson.dumps({"fitter": config.to_dict()}, option=orjson.OPT_INDENT_2)
    )
