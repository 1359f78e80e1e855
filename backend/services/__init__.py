from importlib import import_module

__all__ = [
    "rotation_optimizer",
    "RotationOptimizer",
    "opportunity_scanner",
    "OpportunityScanner",
    "AllocationRecalculator",
    "RosterStateMachine",
    "WorkspaceOptimizerContext",
    "HttpMetricsFeed",
    "StaticMetricsFeed",
]

_LAZY_EXPORTS = {
    "rotation_optimizer": ("services.rotation_optimizer", "rotation_optimizer"),
    "RotationOptimizer": ("services.rotation_optimizer", "RotationOptimizer"),
    "opportunity_scanner": ("services.opportunity_scanner", "opportunity_scanner"),
    "OpportunityScanner": ("services.opportunity_scanner", "OpportunityScanner"),
    "AllocationRecalculator": ("services.allocation_recalculator", "AllocationRecalculator"),
    "RosterStateMachine": ("services.roster_state", "RosterStateMachine"),
    "WorkspaceOptimizerContext": ("services.optimizer_context", "WorkspaceOptimizerContext"),
    "HttpMetricsFeed": ("services.metrics_feed", "HttpMetricsFeed"),
    "StaticMetricsFeed": ("services.metrics_feed", "StaticMetricsFeed"),
}


def __getattr__(name):
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module 'services' has no attribute {name!r}")

    module_name, attr_name = _LAZY_EXPORTS[name]
    module = import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value
