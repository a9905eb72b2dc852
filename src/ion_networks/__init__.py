"""
ion_networks: feature correlation, grouping and ion identity networking for LC–MS.
"""

from .adduct_resolver import AdductResolver, AnnotationConfig, annotate_rows
from .config import IonNetworkConfig
from .correlation import CorrelationConfig, R2RCorrelationData, R2RMap, correlate_rows
from .errors import ConfigurationError, IonNetworkError, MissingMassListError, ScanMismatchError
from .grouping import GroupingConfig, RowGroup, group_rows
from .ion_identity import IonIdentity
from .ion_types import IonLibraryConfig, IonModification, IonType, IonTypeLibrary
from .lcms_utils import MZTolerance, RTTolerance
from .model import Feature, FeatureTable, FragmentScan, Row
from .networks import IonNetwork, create_annotation_networks
from .pipeline import IonNetworkPipeline, PipelineResult, run_ion_networking
from .ranking import IdentityRanker, set_preferred_identities
from .tasks import TaskMonitor

__version__ = "0.1.0"

__all__ = [
    "AdductResolver",
    "AnnotationConfig",
    "annotate_rows",
    "ConfigurationError",
    "CorrelationConfig",
    "correlate_rows",
    "create_annotation_networks",
    "Feature",
    "FeatureTable",
    "FragmentScan",
    "group_rows",
    "GroupingConfig",
    "IdentityRanker",
    "IonIdentity",
    "IonLibraryConfig",
    "IonModification",
    "IonNetwork",
    "IonNetworkConfig",
    "IonNetworkError",
    "IonNetworkPipeline",
    "IonType",
    "IonTypeLibrary",
    "MissingMassListError",
    "MZTolerance",
    "PipelineResult",
    "R2RCorrelationData",
    "R2RMap",
    "Row",
    "RowGroup",
    "RTTolerance",
    "run_ion_networking",
    "ScanMismatchError",
    "set_preferred_identities",
    "TaskMonitor",
    "__version__",
]
