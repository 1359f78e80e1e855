from .roster import (
    Aggressiveness,
    AllocationStrategy,
    CompositeScore,
    CopyBehavior,
    DemotionTrigger,
    GovernanceMode,
    MarketSelectionScore,
    MarketSignals,
    MarketTier,
    OptimizerCriteria,
    RiskComponents,
    RosterState,
    RotationAction,
    Tier,
    WalletMetrics,
)

__all__ = [
    "Aggressiveness",
    "AllocationStrategy",
    "CompositeScore",
    "CopyBehavior",
    "DemotionTrigger",
    "GovernanceMode",
    "MarketSelectionScore",
    "MarketSignals",
    "MarketTier",
    "OptimizerCriteria",
    "RiskComponents",
    "RosterState",
    "RotationAction",
    "Tier",
    "WalletMetrics",
]
