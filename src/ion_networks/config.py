from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

import numpy as np

from .adduct_resolver import AnnotationConfig, normalize_check_mode
from .correlation import CorrelationConfig, validate_correlation_config
from .errors import ConfigurationError
from .grouping import GroupingConfig
from .ion_types import (
    DEFAULT_SELECTED_ADDUCTS,
    DEFAULT_SELECTED_MODIFICATIONS,
    IonLibraryConfig,
    validate_library_config,
)
from .lcms_utils import MZTolerance, RTTolerance, normalize_polarity
from .msms import MS2SimilarityConfig, MSMSCheckConfig, normalize_neutral_loss_check
from .similarity import normalize_similarity_measure


@dataclass(frozen=True)
class IonNetworkConfig:
    """
    Flat configuration of the whole workflow.

    Adduct and modification selections are names from `ion_types.DEFAULT_ADDUCTS`
    and `ion_types.DEFAULT_MODIFICATIONS`; None selects the polarity defaults.
    """

    # correlation
    rt_tolerance: float = 0.1
    rt_tolerance_relative: bool = False
    mz_tolerance: float = 0.005
    mz_tolerance_ppm: float = 5.0
    noise_level: float = 1e4
    min_height: float = 1e5
    min_samples: int = 1
    min_correlated_data_points: int = 5
    min_data_points_on_edge: int = 2
    min_correlation_r: float = 0.85
    use_total_correlation_filter: bool = False
    min_total_correlation_r: float = 0.5
    similarity_measure: str = "pearson"
    use_height_correlation_filter: bool = False
    min_height_correlation_r: float = 0.7
    min_height_correlation_dp: int = 2
    # grouping
    min_avg_group_correlation: Optional[float] = 0.5
    # ion identity library / annotation
    polarity: str = "positive"
    max_charge: int = 2
    max_molecules: int = 3
    selected_adducts: Optional[Tuple[str, ...]] = None
    selected_modifications: Optional[Tuple[str, ...]] = None
    check_mode: str = "one_feature"
    min_annotation_height: float = 0.0
    use_grouping_constraint: bool = True
    min_network_size: int = 2
    add_rows_to_networks: bool = True
    find_network_relations: bool = True
    # MS/MS
    mass_list: str = "centroid"
    use_ms2_similarity: bool = False
    ms2_mz_tolerance: float = 0.003
    ms2_mz_tolerance_ppm: float = 10.0
    ms2_min_height: float = 0.0
    ms2_min_dp: int = 3
    ms2_min_match: int = 3
    ms2_max_dp_for_diff: int = 25
    ms2_min_cosine: float = 0.7
    use_msms_check: bool = False
    check_multimers: bool = True
    check_neutral_losses: bool = True
    neutral_loss_check: str = "precursor"
    # threads per parallel phase
    n_jobs: int = 1

    # -- derived component configs --------------------------------------------

    def rt_tolerance_obj(self) -> RTTolerance:
        return RTTolerance(tolerance=float(self.rt_tolerance), relative=bool(self.rt_tolerance_relative))

    def mz_tolerance_obj(self) -> MZTolerance:
        return MZTolerance(mz=float(self.mz_tolerance), ppm=float(self.mz_tolerance_ppm))

    def ms2_mz_tolerance_obj(self) -> MZTolerance:
        return MZTolerance(mz=float(self.ms2_mz_tolerance), ppm=float(self.ms2_mz_tolerance_ppm))

    def to_correlation_config(self) -> CorrelationConfig:
        return CorrelationConfig(
            rt_tolerance=self.rt_tolerance_obj(),
            min_height=float(self.min_height),
            noise_level=float(self.noise_level),
            min_samples=int(self.min_samples),
            shape_measure=self.similarity_measure,
            min_correlated_data_points=int(self.min_correlated_data_points),
            min_data_points_on_edge=int(self.min_data_points_on_edge),
            min_correlation_r=float(self.min_correlation_r),
            use_total_correlation_filter=bool(self.use_total_correlation_filter),
            min_total_correlation_r=float(self.min_total_correlation_r),
            height_measure=self.similarity_measure,
            use_height_correlation_filter=bool(self.use_height_correlation_filter),
            min_height_correlation_r=float(self.min_height_correlation_r),
            min_height_correlation_dp=int(self.min_height_correlation_dp),
            n_jobs=int(self.n_jobs),
        )

    def to_grouping_config(self) -> GroupingConfig:
        return GroupingConfig(min_avg_correlation=self.min_avg_group_correlation, n_jobs=int(self.n_jobs))

    def to_library_config(self) -> IonLibraryConfig:
        return IonLibraryConfig.from_names(
            self.polarity,
            max_charge=int(self.max_charge),
            max_molecules=int(self.max_molecules),
            adducts=self.selected_adducts,
            modifications=self.selected_modifications,
        )

    def to_annotation_config(self) -> AnnotationConfig:
        return AnnotationConfig(
            mz_tolerance=self.mz_tolerance_obj(),
            check_mode=normalize_check_mode(self.check_mode),
            min_height=float(self.min_annotation_height),
            use_grouping_constraint=bool(self.use_grouping_constraint),
            n_jobs=int(self.n_jobs),
        )

    def to_ms2_similarity_config(self) -> MS2SimilarityConfig:
        return MS2SimilarityConfig(
            mass_list=self.mass_list,
            mz_tolerance=self.ms2_mz_tolerance_obj(),
            min_height=float(self.ms2_min_height),
            min_dp=int(self.ms2_min_dp),
            min_match=int(self.ms2_min_match),
            max_dp_for_diff=int(self.ms2_max_dp_for_diff),
            min_cosine=float(self.ms2_min_cosine),
            n_jobs=int(self.n_jobs),
        )

    def to_msms_check_config(self) -> MSMSCheckConfig:
        return MSMSCheckConfig(
            mass_list=self.mass_list,
            mz_tolerance=self.ms2_mz_tolerance_obj(),
            min_height=float(self.ms2_min_height),
            check_multimers=bool(self.check_multimers),
            check_neutral_losses=bool(self.check_neutral_losses),
            neutral_loss_check=self.neutral_loss_check,
            n_jobs=int(self.n_jobs),
        )

    # -- validation / construction ---------------------------------------------

    def validate(self) -> None:
        """Raise `ConfigurationError` for any invalid setting."""
        for name in ("rt_tolerance", "mz_tolerance", "mz_tolerance_ppm", "ms2_mz_tolerance", "ms2_mz_tolerance_ppm"):
            v = float(getattr(self, name))
            if not np.isfinite(v) or v < 0:
                raise ConfigurationError(f"{name} must be finite and >= 0, got {v!r}.")
        # tolerance objects reject zero tolerances
        self.rt_tolerance_obj()
        self.mz_tolerance_obj()
        self.ms2_mz_tolerance_obj()
        for name in ("min_height", "noise_level", "min_annotation_height", "ms2_min_height"):
            v = float(getattr(self, name))
            if not np.isfinite(v) or v < 0:
                raise ConfigurationError(f"{name} must be finite and >= 0, got {v!r}.")
        if self.min_avg_group_correlation is not None and not np.isfinite(float(self.min_avg_group_correlation)):
            raise ConfigurationError("min_avg_group_correlation must be finite or None.")
        if int(self.min_network_size) < 1:
            raise ConfigurationError(f"min_network_size must be >= 1, got {self.min_network_size!r}.")
        if int(self.n_jobs) == 0:
            raise ConfigurationError("n_jobs must not be 0.")
        normalize_polarity(self.polarity)
        normalize_check_mode(self.check_mode)
        normalize_similarity_measure(self.similarity_measure)
        normalize_neutral_loss_check(self.neutral_loss_check)
        if self.selected_adducts is not None and len(self.selected_adducts) == 0:
            raise ConfigurationError("At least one adduct must be selected.")
        validate_correlation_config(self.to_correlation_config())
        validate_library_config(self.to_library_config())
        self.to_ms2_similarity_config()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "IonNetworkConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        kwargs = dict(data)
        for key in ("selected_adducts", "selected_modifications"):
            if kwargs.get(key) is not None:
                value = kwargs[key]
                if isinstance(value, str):
                    value = [v for v in value.split(",") if v.strip()]
                kwargs[key] = tuple(str(v).strip() for v in value)
        cfg = cls(**kwargs)
        cfg.validate()
        return cfg

    @classmethod
    def from_json(cls, path: Path | str) -> "IonNetworkConfig":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(path)
        obj = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(obj, dict):
            raise ConfigurationError(f"{path}: configuration must be a JSON object.")
        return cls.from_mapping(obj)

    def selected_adduct_names(self) -> Tuple[str, ...]:
        if self.selected_adducts is not None:
            return tuple(self.selected_adducts)
        return tuple(DEFAULT_SELECTED_ADDUCTS[normalize_polarity(self.polarity)])

    def selected_modification_names(self) -> Tuple[str, ...]:
        if self.selected_modifications is not None:
            return tuple(self.selected_modifications)
        return tuple(DEFAULT_SELECTED_MODIFICATIONS)
