"""deltaloss: logistic loss kernels for block coordinate descent."""

from .config import LogitLossDeltaConfig
from .data import RowBlock
from .loss import GradientRecords, LogitLossDelta, Loss, create_loss

__all__ = [
    "GradientRecords",
    "LogitLossDelta",
    "LogitLossDeltaConfig",
    "Loss",
    "RowBlock",
    "create_loss",
]
