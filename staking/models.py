from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class EventType(str, Enum):
    POOL_CREATED = "POOL_CREATED"
    REWARD_TOKEN_ADDED = "REWARD_TOKEN_ADDED"
    RATES_UPDATED = "RATES_UPDATED"
    PAUSE_CHANGED = "PAUSE_CHANGED"
    DEPOSIT = "DEPOSIT"
    WITHDRAW = "WITHDRAW"
    CLAIM = "CLAIM"


class AdminAction(str, Enum):
    CREATE_POOL = "create_pool"
    ADD_REWARD_TOKEN = "add_reward_token"
    SET_REWARD_RATES = "set_reward_rates"
    SET_PAUSED = "set_paused"
    ADVANCE_BLOCKS = "advance_blocks"


class CreatePoolRequest(BaseModel):
    caller: str
    pool_id: str = Field(..., min_length=1)
    staked_asset: Optional[str] = Field(None, description="Token users stake into the pool")
    reward_tokens: list[str] = Field(default_factory=list)
    rates_per_tick: list[int] = Field(default_factory=list)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "caller": "0xadmin",
            "pool_id": "stt-rewt",
            "staked_asset": "StT",
            "reward_tokens": ["RewT"],
            "rates_per_tick": [1000000000000000000],
        }
    })


class AddRewardTokenRequest(BaseModel):
    caller: str
    pool_id: str
    token: str
    rate_per_tick: int = Field(..., ge=0)
    settle_first: bool = Field(default=True, description="Bring accrual current before appending")


class SetRewardRatesRequest(BaseModel):
    caller: str
    pool_id: str
    rates_per_tick: list[int]


class SetPausedRequest(BaseModel):
    caller: str
    pool_id: str
    paused: bool


class DepositRequest(BaseModel):
    caller: str
    pool_id: str
    amount: int = Field(..., ge=0)
    beneficiary: Optional[str] = Field(None, description="Position credited; defaults to the caller")


class DepositForRequest(BaseModel):
    caller: str
    pool_id: str
    amount: int = Field(..., ge=0)
    beneficiary: str = Field(..., min_length=1)


class WithdrawRequest(BaseModel):
    caller: str
    pool_id: str
    amount: int = Field(..., ge=0)


class ClaimRequest(BaseModel):
    caller: str
    pool_id: str


class RewardStreamView(BaseModel):
    token: str
    rate_per_tick: int
    scale: int
    acc_per_share: int

    model_config = ConfigDict(from_attributes=True)


class PoolView(BaseModel):
    pool_id: str
    staked_asset: str
    last_accrual_tick: int
    total_staked: int
    paused: bool
    streams: list[RewardStreamView]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def reward_tokens(self) -> list[str]:
        return [s.token for s in self.streams]

    @property
    def rates_per_tick(self) -> list[int]:
        return [s.rate_per_tick for s in self.streams]


class UserPosition(BaseModel):
    pool_id: str
    user: str
    staked_amount: int = 0
    reward_debt: list[int] = Field(default_factory=list)
    total_claimed: list[int] = Field(default_factory=list)
    last_interaction_tick: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class StakingEvent(BaseModel):
    id: UUID
    event_type: EventType
    pool_id: str
    user: Optional[str] = None
    caller: str
    amount: int = 0
    reward_tokens: list[str] = Field(default_factory=list)
    reward_amounts: list[int] = Field(default_factory=list)
    tick: int
    created_at: datetime
    metadata: dict = Field(default_factory=dict)


class PendingRewardsResponse(BaseModel):
    pool_id: str
    user: str
    tick: int
    reward_tokens: list[str]
    amounts: list[int]


class OperationResponse(BaseModel):
    event: StakingEvent
    position: Optional[UserPosition] = None
    message: str
