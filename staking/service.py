"""
Reward Ledger Engine.

Every pool keeps one reward stream per reward token. A stream's
``acc_per_share`` is the reward earned by one unit of stake since the pool
was created, multiplied by the stream's ``scale``. A position only stores
``reward_debt``, the part of ``staked_amount * acc_per_share / scale`` that
has already been paid out, so each call costs O(reward tokens) no matter how
many users are staked.

Mutating calls run in this order: bring accrual current, settle pending
rewards against the old balance, apply the balance change, record new
debts, then move tokens.
"""

import copy
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Iterator, Optional
from uuid import uuid4

from .config import ADMIN_ADDRESS, CUSTODY_ADDRESS, MIN_SCALE_DECIMALS, ZERO_ADDRESS
from .events import EventSink, InMemoryEventLog
from .models import (
    AdminAction,
    EventType,
    StakingEvent,
    PoolView,
    UserPosition,
    CreatePoolRequest,
    AddRewardTokenRequest,
    SetRewardRatesRequest,
    SetPausedRequest,
    DepositRequest,
    DepositForRequest,
    WithdrawRequest,
    ClaimRequest,
    OperationResponse,
)

if TYPE_CHECKING:
    from .token import TokenLedger

logger = logging.getLogger(__name__)


class StakingServiceError(Exception):
    pass


class PoolNotFoundError(StakingServiceError):
    pass


class PoolAlreadyExistsError(StakingServiceError):
    pass


class PoolPausedError(StakingServiceError):
    pass


class InvalidPoolConfigError(StakingServiceError):
    pass


class InsufficientBalanceError(StakingServiceError):
    pass


class TransferFailedError(StakingServiceError):
    pass


class UnauthorizedError(StakingServiceError):
    pass


class ReentrancyError(StakingServiceError):
    pass


class AccountingError(StakingServiceError):
    pass


Authorizer = Callable[[str, AdminAction], bool]


class OwnerAuthorizer:
    """Allows the owner every admin action, other accounts only what they were granted."""

    def __init__(self, owner: str):
        self.owner = owner
        self.grants: dict[str, set[AdminAction]] = {}

    def grant(self, account: str, action: AdminAction) -> None:
        self.grants.setdefault(account, set()).add(action)

    def revoke(self, account: str, action: AdminAction) -> None:
        self.grants.get(account, set()).discard(action)

    def __call__(self, caller: str, action: AdminAction) -> bool:
        return caller == self.owner or action in self.grants.get(caller, set())


class InMemoryStorage:
    def __init__(self):
        self.pools: dict[str, dict] = {}
        self.positions: dict[tuple[str, str], dict] = {}
        self.accounting_defects: list[dict] = []


class _Transaction:
    def __init__(self, pool: dict):
        self.pool = pool
        self.pool_snapshot = copy.deepcopy(pool)
        self.position_snapshots: dict[tuple[str, str], Optional[dict]] = {}
        self.transfers: list[tuple[str, str, str, int, Optional[str]]] = []
        self.executed: list[tuple[str, str, str, int, Optional[str]]] = []

    def transfer(self, token: str, sender: str, recipient: str, amount: int, spender: Optional[str] = None) -> None:
        self.transfers.append((token, sender, recipient, amount, spender))


class StakingService:
    def __init__(
        self,
        token_ledger: "TokenLedger",
        clock: Callable[[], int],
        authorizer: Optional[Authorizer] = None,
        event_sink: Optional[EventSink] = None,
        storage: Optional[InMemoryStorage] = None,
        custody_address: str = CUSTODY_ADDRESS,
    ):
        self.token_ledger = token_ledger
        self.clock = clock
        self.authorizer = authorizer or OwnerAuthorizer(ADMIN_ADDRESS)
        self.events = event_sink or InMemoryEventLog()
        self.storage = storage or InMemoryStorage()
        self.custody_address = custody_address
        self._busy: set[str] = set()

    # Admin operations

    def create_pool(self, request: CreatePoolRequest) -> OperationResponse:
        self._authorize(request.caller, AdminAction.CREATE_POOL)
        if request.pool_id in self.storage.pools:
            raise PoolAlreadyExistsError(f"Pool {request.pool_id} already exists")
        if not request.staked_asset or request.staked_asset == ZERO_ADDRESS:
            raise InvalidPoolConfigError("Staked asset must be a non-zero token id")
        if len(request.reward_tokens) != len(request.rates_per_tick):
            raise InvalidPoolConfigError(
                f"Got {len(request.reward_tokens)} reward tokens but {len(request.rates_per_tick)} rates"
            )

        tick = self.clock()
        pool = {
            "pool_id": request.pool_id,
            "staked_asset": request.staked_asset,
            "last_accrual_tick": tick,
            "total_staked": 0,
            "paused": False,
            "streams": [],
            "token_index": {},
            "created_at": datetime.now(timezone.utc),
        }
        for token, rate in zip(request.reward_tokens, request.rates_per_tick):
            self._append_stream(pool, token, rate)

        self.storage.pools[request.pool_id] = pool
        logger.info(
            "Created pool %s staking %s with rewards %s", request.pool_id,
            request.staked_asset, request.reward_tokens,
        )
        event = self._emit(
            EventType.POOL_CREATED, pool, request.caller, tick,
            metadata={"staked_asset": request.staked_asset, "rates_per_tick": list(request.rates_per_tick)},
        )
        return OperationResponse(event=event, message="Pool created successfully")

    def add_reward_token(self, request: AddRewardTokenRequest) -> OperationResponse:
        self._authorize(request.caller, AdminAction.ADD_REWARD_TOKEN)
        tick = self.clock()
        with self._pool_transaction(request.pool_id) as tx:
            if request.settle_first:
                self._accrue(tx.pool, tick)
            index = self._append_stream(tx.pool, request.token, request.rate_per_tick)

        logger.info("Added reward token %s to pool %s at index %d", request.token, request.pool_id, index)
        event = self._emit(
            EventType.REWARD_TOKEN_ADDED, tx.pool, request.caller, tick,
            reward_tokens=[request.token],
            metadata={"index": index, "rate_per_tick": request.rate_per_tick, "settle_first": request.settle_first},
        )
        return OperationResponse(event=event, message="Reward token added successfully")

    def set_reward_rates(self, request: SetRewardRatesRequest) -> OperationResponse:
        self._authorize(request.caller, AdminAction.SET_REWARD_RATES)
        tick = self.clock()
        with self._pool_transaction(request.pool_id) as tx:
            pool = tx.pool
            if len(request.rates_per_tick) != len(pool["streams"]):
                raise InvalidPoolConfigError(
                    f"Pool {request.pool_id} has {len(pool['streams'])} reward tokens, "
                    f"got {len(request.rates_per_tick)} rates"
                )
            if any(rate < 0 for rate in request.rates_per_tick):
                raise InvalidPoolConfigError("Reward rates cannot be negative")
            # Ticks before this call are paid at the old rates.
            self._accrue(pool, tick)
            for stream, rate in zip(pool["streams"], request.rates_per_tick):
                stream["rate_per_tick"] = rate

        logger.info("Updated pool %s reward rates to %s", request.pool_id, request.rates_per_tick)
        event = self._emit(
            EventType.RATES_UPDATED, tx.pool, request.caller, tick,
            reward_tokens=[s["token"] for s in tx.pool["streams"]],
            metadata={"rates_per_tick": list(request.rates_per_tick)},
        )
        return OperationResponse(event=event, message="Reward rates updated successfully")

    def set_paused(self, request: SetPausedRequest) -> OperationResponse:
        self._authorize(request.caller, AdminAction.SET_PAUSED)
        tick = self.clock()
        with self._pool_transaction(request.pool_id) as tx:
            tx.pool["paused"] = request.paused

        logger.info("Pool %s paused=%s", request.pool_id, request.paused)
        event = self._emit(
            EventType.PAUSE_CHANGED, tx.pool, request.caller, tick,
            metadata={"paused": request.paused},
        )
        return OperationResponse(event=event, message="Pool paused" if request.paused else "Pool unpaused")

    # Staking operations

    def deposit(self, request: DepositRequest) -> OperationResponse:
        return self._deposit(request.caller, request.pool_id, request.amount, request.beneficiary or request.caller)

    def deposit_for(self, request: DepositForRequest) -> OperationResponse:
        return self._deposit(request.caller, request.pool_id, request.amount, request.beneficiary)

    def withdraw(self, request: WithdrawRequest) -> OperationResponse:
        tick = self.clock()
        with self._pool_transaction(request.pool_id) as tx:
            pool = tx.pool
            self._require_active(pool)
            self._accrue(pool, tick)

            position = self._touch_position(tx, request.caller, create=False)
            before = position["staked_amount"]
            if request.amount > before:
                logger.warning(
                    "Rejected withdraw of %d from pool %s by %s with balance %d",
                    request.amount, request.pool_id, request.caller, before,
                )
                raise InsufficientBalanceError(
                    f"Cannot withdraw {request.amount} from pool {request.pool_id}: staked balance is {before}"
                )

            position["staked_amount"] = before - request.amount
            rewards = self._settle_all(tx, position, before)
            pool["total_staked"] -= request.amount
            position["last_interaction_tick"] = tick
            if request.amount > 0:
                tx.transfer(pool["staked_asset"], self.custody_address, request.caller, request.amount)

        event = self._emit(
            EventType.WITHDRAW, tx.pool, request.caller, tick, user=request.caller,
            amount=request.amount, reward_amounts=rewards,
        )
        return OperationResponse(
            event=event, position=UserPosition(**position), message="Withdrawal completed successfully",
        )

    def claim_rewards(self, request: ClaimRequest) -> OperationResponse:
        tick = self.clock()
        with self._pool_transaction(request.pool_id) as tx:
            self._accrue(tx.pool, tick)
            position = self._touch_position(tx, request.caller, create=False)
            rewards = self._settle_all(tx, position, position["staked_amount"])
            position["last_interaction_tick"] = tick

        event = self._emit(
            EventType.CLAIM, tx.pool, request.caller, tick, user=request.caller, reward_amounts=rewards,
        )
        return OperationResponse(
            event=event, position=UserPosition(**position), message="Rewards claimed successfully",
        )

    def update_accrual(self, pool_id: str) -> PoolView:
        with self._pool_transaction(pool_id) as tx:
            self._accrue(tx.pool, self.clock())
        return self._pool_view(tx.pool)

    # Queries

    def pool_exists(self, pool_id: str) -> bool:
        return pool_id in self.storage.pools

    def get_pool(self, pool_id: str) -> PoolView:
        return self._pool_view(self._get_pool(pool_id))

    def reward_tokens(self, pool_id: str) -> list[str]:
        return [s["token"] for s in self._get_pool(pool_id)["streams"]]

    def reward_rates(self, pool_id: str) -> list[int]:
        return [s["rate_per_tick"] for s in self._get_pool(pool_id)["streams"]]

    def total_staked(self, pool_id: str) -> int:
        return self._get_pool(pool_id)["total_staked"]

    def staked_amount(self, pool_id: str, user: str) -> int:
        return self.get_position(pool_id, user).staked_amount

    def get_position(self, pool_id: str, user: str) -> UserPosition:
        self._get_pool(pool_id)
        position = self.storage.positions.get((pool_id, user))
        if position is None:
            return UserPosition(pool_id=pool_id, user=user)
        return UserPosition(**position)

    def pending_rewards(self, pool_id: str, user: str) -> list[int]:
        """What a claim at the current tick would pay, without touching stored state."""
        pool = self._get_pool(pool_id)
        accumulators = self._projected_accumulators(pool, self.clock())
        position = self.storage.positions.get((pool_id, user))
        if position is None:
            return [0] * len(accumulators)

        debts = position["reward_debt"]
        self._check_alignment(pool, position)
        amounts = []
        for index, acc in enumerate(accumulators):
            debt = debts[index] if index < len(debts) else 0
            amounts.append(self._pending(
                pool, user, index, position["staked_amount"], acc, debt, record=False,
            ))
        return amounts

    # Accrual

    def _projected_accumulators(self, pool: dict, tick: int) -> list[int]:
        accumulators = [s["acc_per_share"] for s in pool["streams"]]
        if tick <= pool["last_accrual_tick"] or pool["total_staked"] == 0:
            return accumulators

        elapsed = tick - pool["last_accrual_tick"]
        for index, stream in enumerate(pool["streams"]):
            emitted = stream["rate_per_tick"] * elapsed
            accumulators[index] += emitted * stream["scale"] // pool["total_staked"]
        return accumulators

    def _accrue(self, pool: dict, tick: int) -> None:
        if tick <= pool["last_accrual_tick"]:
            return
        # Emission while nothing is staked is skipped, not carried forward.
        for stream, acc in zip(pool["streams"], self._projected_accumulators(pool, tick)):
            stream["acc_per_share"] = acc
        logger.debug(
            "Pool %s accrued ticks %d..%d over %d staked",
            pool["pool_id"], pool["last_accrual_tick"], tick, pool["total_staked"],
        )
        pool["last_accrual_tick"] = tick

    # Debt tracking

    def _settle_all(self, tx: _Transaction, position: dict, before: int) -> list[int]:
        return [self._settle(tx, position, index, before) for index in range(len(tx.pool["streams"]))]

    def _settle(self, tx: _Transaction, position: dict, index: int, before: int) -> int:
        """Pay out what ``before`` earned on stream ``index`` and reset the debt to the new balance.

        ``position["staked_amount"]`` must already hold the balance after the change.
        """
        pool = tx.pool
        stream = self._stream(pool, index)
        debts = position["reward_debt"]
        claimed = position["total_claimed"]
        self._check_alignment(pool, position)
        while len(debts) <= index:
            debts.append(0)
        while len(claimed) <= index:
            claimed.append(0)

        pending = self._pending(pool, position["user"], index, before, stream["acc_per_share"], debts[index])
        if pending > 0:
            tx.transfer(stream["token"], self.custody_address, position["user"], pending)
            claimed[index] += pending

        debts[index] = position["staked_amount"] * stream["acc_per_share"] // stream["scale"]
        return pending

    def _check_alignment(self, pool: dict, position: dict) -> None:
        if len(position["reward_debt"]) > len(pool["streams"]):
            raise AccountingError(
                f"Position {position['user']} in pool {pool['pool_id']} tracks {len(position['reward_debt'])} debts "
                f"for {len(pool['streams'])} reward tokens"
            )

    def _pending(
        self, pool: dict, user: str, index: int, balance: int, acc: int, debt: int, record: bool = True,
    ) -> int:
        if balance == 0:
            return 0
        scale = self._stream(pool, index)["scale"]
        pending = balance * acc // scale - debt
        if pending < 0:
            defect = {
                "pool_id": pool["pool_id"],
                "user": user,
                "index": index,
                "balance": balance,
                "acc_per_share": acc,
                "reward_debt": debt,
                "pending": pending,
            }
            logger.error("Negative pending reward clamped to zero: %s", defect)
            if record:
                self.storage.accounting_defects.append(defect)
            return 0
        return pending

    # Balance mutation

    def _deposit(self, caller: str, pool_id: str, amount: int, beneficiary: str) -> OperationResponse:
        tick = self.clock()
        with self._pool_transaction(pool_id) as tx:
            pool = tx.pool
            self._require_active(pool)
            self._accrue(pool, tick)

            position = self._touch_position(tx, beneficiary, create=True)
            before = position["staked_amount"]
            position["staked_amount"] = before + amount
            rewards = self._settle_all(tx, position, before)
            pool["total_staked"] += amount
            position["last_interaction_tick"] = tick
            if amount > 0:
                tx.transfer(pool["staked_asset"], caller, self.custody_address, amount, spender=self.custody_address)

        event = self._emit(
            EventType.DEPOSIT, tx.pool, caller, tick, user=beneficiary,
            amount=amount, reward_amounts=rewards,
        )
        return OperationResponse(event=event, position=UserPosition(**position), message="Deposit completed successfully")

    def _touch_position(self, tx: _Transaction, user: str, create: bool) -> dict:
        key = (tx.pool["pool_id"], user)
        position = self.storage.positions.get(key)
        if key not in tx.position_snapshots:
            tx.position_snapshots[key] = copy.deepcopy(position)
        if position is None:
            position = {
                "pool_id": tx.pool["pool_id"],
                "user": user,
                "staked_amount": 0,
                "reward_debt": [],
                "total_claimed": [],
                "last_interaction_tick": None,
            }
            if create:
                self.storage.positions[key] = position
        return position

    # Transactions

    @contextmanager
    def _pool_transaction(self, pool_id: str) -> Iterator[_Transaction]:
        if pool_id in self._busy:
            logger.warning("Rejected reentrant call on pool %s", pool_id)
            raise ReentrancyError(f"Pool {pool_id} already has an operation in flight")
        tx = _Transaction(self._get_pool(pool_id))
        self._busy.add(pool_id)
        try:
            yield tx
            for transfer in tx.transfers:
                token, sender, recipient, amount, spender = transfer
                self.token_ledger.move(token, sender, recipient, amount, spender=spender)
                tx.executed.append(transfer)
        except Exception:
            self._rollback(tx)
            raise
        finally:
            self._busy.discard(pool_id)

    def _rollback(self, tx: _Transaction) -> None:
        pool_id = tx.pool["pool_id"]
        self.storage.pools[pool_id] = tx.pool_snapshot
        for key, snapshot in tx.position_snapshots.items():
            if snapshot is None:
                self.storage.positions.pop(key, None)
            else:
                self.storage.positions[key] = snapshot

        # State is restored first; every executed transfer gets a reversal attempt.
        failures = []
        for token, sender, recipient, amount, _ in reversed(tx.executed):
            try:
                self.token_ledger.move(token, recipient, sender, amount)
            except Exception as e:
                logger.critical("Could not reverse %s transfer of %d to %s: %s", token, amount, recipient, e)
                failures.append({"token": token, "from": recipient, "to": sender, "amount": amount, "error": str(e)})

        if failures:
            self.storage.accounting_defects.append({"pool_id": pool_id, "unreversed_transfers": failures})
            raise AccountingError(f"Rollback of pool {pool_id} left {len(failures)} transfer(s) unreversed")
        logger.warning("Rolled back operation on pool %s", pool_id)

    # Helpers

    def _authorize(self, caller: str, action: AdminAction) -> None:
        if not self.authorizer(caller, action):
            logger.warning("Rejected %s by unauthorized caller %s", action.value, caller)
            raise UnauthorizedError(f"{caller} is not allowed to {action.value}")

    def _get_pool(self, pool_id: str) -> dict:
        pool = self.storage.pools.get(pool_id)
        if pool is None:
            raise PoolNotFoundError(f"Pool {pool_id} not found")
        return pool

    def _require_active(self, pool: dict) -> None:
        if pool["paused"]:
            raise PoolPausedError(f"Pool {pool['pool_id']} is paused")

    def _stream(self, pool: dict, index: int) -> dict:
        if not 0 <= index < len(pool["streams"]):
            raise AccountingError(
                f"Reward token index {index} out of range for pool {pool['pool_id']} "
                f"with {len(pool['streams'])} reward tokens"
            )
        return pool["streams"][index]

    def _append_stream(self, pool: dict, token: str, rate: int) -> int:
        if not token or token == ZERO_ADDRESS:
            raise InvalidPoolConfigError("Reward token must be a non-zero token id")
        if token == pool["staked_asset"]:
            raise InvalidPoolConfigError(f"Reward token {token} is the staked asset of pool {pool['pool_id']}")
        if token in pool["token_index"]:
            raise InvalidPoolConfigError(f"Reward token {token} already registered in pool {pool['pool_id']}")
        if rate < 0:
            raise InvalidPoolConfigError("Reward rate cannot be negative")
        try:
            decimals = self.token_ledger.decimals(token)
        except TransferFailedError as e:
            raise InvalidPoolConfigError(f"Unknown reward token {token}") from e

        pool["streams"].append({
            "token": token,
            "rate_per_tick": rate,
            "scale": 10 ** max(decimals, MIN_SCALE_DECIMALS),
            "acc_per_share": 0,
        })
        index = len(pool["streams"]) - 1
        pool["token_index"][token] = index
        return index

    def _pool_view(self, pool: dict) -> PoolView:
        return PoolView(**{k: v for k, v in pool.items() if k != "token_index"})

    def _emit(
        self,
        event_type: EventType,
        pool: dict,
        caller: str,
        tick: int,
        user: Optional[str] = None,
        amount: int = 0,
        reward_tokens: Optional[list[str]] = None,
        reward_amounts: Optional[list[int]] = None,
        metadata: Optional[dict] = None,
    ) -> StakingEvent:
        if reward_tokens is None and reward_amounts is not None:
            reward_tokens = [s["token"] for s in pool["streams"]]
        event = StakingEvent(
            id=uuid4(),
            event_type=event_type,
            pool_id=pool["pool_id"],
            user=user,
            caller=caller,
            amount=amount,
            reward_tokens=reward_tokens or [],
            reward_amounts=reward_amounts or [],
            tick=tick,
            created_at=datetime.now(timezone.utc),
            metadata=metadata or {},
        )
        self.events.emit(event)
        return event
