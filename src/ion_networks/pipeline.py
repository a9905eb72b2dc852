from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from .adduct_resolver import AdductResolver, annotate_rows
from .config import IonNetworkConfig
from .correlation import R2RCorrelationData, R2RMap, correlate_rows
from .grouping import RowGroup, group_rows
from .ion_types import IonTypeLibrary, resolve_modifications
from .model import FeatureTable, clear_ion_identities
from .msms import (
    R2RMS2Similarity,
    SpectralSimilarityScorer,
    apply_ms2_similarity_evidence,
    check_msms_evidence,
    check_rows_ms2_similarity,
    identities_with_msms_evidence,
)
from .networks import (
    IonNetwork,
    IonNetworkRelation,
    add_rows_to_networks,
    create_annotation_networks,
    find_network_relations,
    recalc_all_networks,
)
from .ranking import set_preferred_identities
from .tasks import TaskMonitor

logger = logging.getLogger(__name__)

TaskStatus = Literal["finished", "canceled", "error"]


@dataclass
class PipelineResult:
    """
    Outcome of one run. Canceled and failed runs keep whatever the finished
    phases produced; zero networks with status "finished" is a valid result.
    """

    status: str = "finished"
    error_message: Optional[str] = None
    correlations: Optional[R2RMap[R2RCorrelationData]] = None
    groups: List[RowGroup] = field(default_factory=list)
    ms2_similarities: Optional[R2RMap[R2RMS2Similarity]] = None
    library: Optional[IonTypeLibrary] = None
    networks: List[IonNetwork] = field(default_factory=list)
    relations: List[IonNetworkRelation] = field(default_factory=list)
    diag: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_finished(self) -> bool:
        return self.status == "finished"

    @property
    def is_canceled(self) -> bool:
        return self.status == "canceled"

    @property
    def is_error(self) -> bool:
        return self.status == "error"


class IonNetworkPipeline:
    """
    Correlation -> grouping -> MS2 similarity -> annotation -> network refinement.

    The configuration is validated on construction; a `ConfigurationError` is
    raised before any work starts.
    """

    def __init__(
        self,
        cfg: IonNetworkConfig = IonNetworkConfig(),
        *,
        monitor: Optional[TaskMonitor] = None,
        ms2_scorer: Optional[SpectralSimilarityScorer] = None,
    ):
        cfg.validate()
        self.cfg = cfg
        self.monitor = monitor if monitor is not None else TaskMonitor()
        self.library = IonTypeLibrary(cfg.to_library_config())
        self.ms2_scorer = ms2_scorer

    def cancel(self) -> None:
        self.monitor.cancel()

    def _canceled(self, result: PipelineResult, stage: str) -> bool:
        if self.monitor.is_canceled():
            result.status = "canceled"
            logger.info("Ion networking canceled during %s", stage)
            return True
        return False

    def run(self, table: FeatureTable) -> PipelineResult:
        result = PipelineResult(library=self.library)
        try:
            self._run_stages(table, result)
        except Exception as e:
            logger.error("Ion networking failed in stage %s", self.monitor.stage, exc_info=True)
            result.status = "error"
            result.error_message = f"{type(e).__name__}: {e}"
        result.diag["status"] = result.status
        result.diag["progress"] = float(self.monitor.progress)
        logger.info("Ion networking %s (stage %s)", result.status, self.monitor.stage)
        return result

    def _run_stages(self, table: FeatureTable, result: PipelineResult) -> bool:
        cfg = self.cfg
        monitor = self.monitor
        use_groups = bool(cfg.use_grouping_constraint)

        monitor.set_stage("correlation")
        corr_map, diag = correlate_rows(table, cfg.to_correlation_config(), monitor=monitor)
        result.correlations = corr_map
        result.diag["correlation"] = diag
        if self._canceled(result, "correlation"):
            return False
        monitor.set_stage_progress(1.0)

        monitor.set_stage("grouping")
        groups, diag = group_rows(table, corr_map, cfg.to_grouping_config(), monitor=monitor)
        result.groups = groups
        result.diag["grouping"] = diag
        if self._canceled(result, "grouping"):
            return False
        monitor.set_stage_progress(1.0)

        monitor.set_stage("ms2_similarity")
        if cfg.use_ms2_similarity:
            ms2_cfg = cfg.to_ms2_similarity_config()
            sims, diag = check_rows_ms2_similarity(
                table,
                ms2_cfg,
                groups=groups if use_groups else None,
                scorer=self.ms2_scorer,
                monitor=monitor,
            )
            result.ms2_similarities = sims
            result.diag["ms2_similarity"] = diag
            if self._canceled(result, "ms2_similarity"):
                return False
        monitor.set_stage_progress(1.0)

        monitor.set_stage("annotation")
        clear_ion_identities(table)
        resolver = AdductResolver.from_config(self.library, cfg.to_annotation_config(), samples=table.samples)
        result.diag["annotation"] = annotate_rows(
            table,
            resolver,
            groups=groups if use_groups else None,
            corr_map=corr_map,
            n_jobs=cfg.n_jobs,
            monitor=monitor,
        )
        if self._canceled(result, "annotation"):
            return False
        monitor.set_stage_progress(1.0)

        monitor.set_stage("refinement")
        tol = cfg.mz_tolerance_obj()
        networks = create_annotation_networks(
            table, tol, use_grouping=use_groups, min_size=cfg.min_network_size, monitor=monitor
        )
        result.networks = networks
        monitor.set_stage_progress(0.4)
        if self._canceled(result, "refinement"):
            return False

        n_added = 0
        if cfg.add_rows_to_networks and use_groups:
            n_added = add_rows_to_networks(table, networks, resolver, monitor=monitor)
        msms_diag: Dict[str, Any] = {}
        if cfg.use_msms_check:
            msms_diag = check_msms_evidence(table, cfg.to_msms_check_config(), monitor=monitor)
        if result.ms2_similarities is not None:
            msms_diag["n_ms2_similarity_evidence"] = apply_ms2_similarity_evidence(
                networks, result.ms2_similarities, cfg.ms2_min_cosine
            )
        monitor.set_stage_progress(0.7)
        if self._canceled(result, "refinement"):
            return False

        networks = recalc_all_networks(networks, table, remove_empty=True, min_size=cfg.min_network_size)
        result.networks = networks
        if cfg.find_network_relations:
            result.relations = find_network_relations(
                networks, tol, resolve_modifications(cfg.selected_modification_names())
            )
        n_preferred = set_preferred_identities(table, networks, groups if use_groups else None)
        result.diag["refinement"] = {
            "n_networks": int(len(networks)),
            "n_rows_added": int(n_added),
            "n_relations": int(len(result.relations)),
            "n_preferred": int(n_preferred),
            "n_identities_with_msms": int(len(identities_with_msms_evidence(table))),
            **msms_diag,
        }
        monitor.set_stage_progress(1.0)
        return True


def run_ion_networking(
    table: FeatureTable,
    cfg: IonNetworkConfig = IonNetworkConfig(),
    *,
    monitor: Optional[TaskMonitor] = None,
) -> PipelineResult:
    return IonNetworkPipeline(cfg, monitor=monitor).run(table)
