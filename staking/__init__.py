"""
Multi-pool, multi-token staking reward ledger

This module provides:
- Named pools pairing one staked asset with any number of reward streams
- Lazy accumulated-per-share accrual, O(reward tokens) per call
- Deposit, deposit-on-behalf, withdraw and claim with all-or-nothing semantics
- Reward tokens appended mid-life without disturbing settled debts
- Read-only pending reward previews
"""

from .models import (
    AdminAction,
    EventType,
    StakingEvent,
    PoolView,
    UserPosition,
)
from .service import (
    StakingService,
    OwnerAuthorizer,
    StakingServiceError,
    PoolNotFoundError,
    PoolAlreadyExistsError,
    PoolPausedError,
    InvalidPoolConfigError,
    InsufficientBalanceError,
    TransferFailedError,
    UnauthorizedError,
    ReentrancyError,
    AccountingError,
)
from .token import InMemoryTokenLedger
from .clock import BlockClock

__all__ = [
    "AdminAction",
    "EventType",
    "StakingEvent",
    "PoolView",
    "UserPosition",
    "StakingService",
    "OwnerAuthorizer",
    "StakingServiceError",
    "PoolNotFoundError",
    "PoolAlreadyExistsError",
    "PoolPausedError",
    "InvalidPoolConfigError",
    "InsufficientBalanceError",
    "TransferFailedError",
    "UnauthorizedError",
    "ReentrancyError",
    "AccountingError",
    "InMemoryTokenLedger",
    "BlockClock",
]
