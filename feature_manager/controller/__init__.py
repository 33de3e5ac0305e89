"""ClusterSummary controller module.

This module provides the reconciler deploying features to target clusters,
the index of configuration objects referenced by each ClusterSummary and the
handlers mapping configuration changes to ClusterSummaries to reconcile.
"""

from .controller import ClusterSummaryReconciler, ReconcileResult
from .features import FEATURES, Feature, FeatureContext
from .handlers import requeue_for_reference, watch_references
from .hash import EMPTY_HASH
from .reference_index import ReferenceIndex

__all__ = [
    "ClusterSummaryReconciler",
    "ReconcileResult",
    "Feature",
    "FeatureContext",
    "FEATURES",
    "EMPTY_HASH",
    "ReferenceIndex",
    "requeue_for_reference",
    "watch_references",
]
