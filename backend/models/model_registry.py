"""Central registry for SQLAlchemy models used by migrations."""


def register_all_models() -> None:
    """Import every module that declares Base subclasses as a side effect."""
    from models.database import (  # noqa: F401
        MarketSelection,
        OptimizerSnapshot,
        RotationHistory,
        TunerGovernance,
        WalletAllocation,
        WalletBan,
        Workspace,
    )

    _ = (
        MarketSelection,
        OptimizerSnapshot,
        RotationHistory,
        TunerGovernance,
        WalletAllocation,
        WalletBan,
        Workspace,
    )
